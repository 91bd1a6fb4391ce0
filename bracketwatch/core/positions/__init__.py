"""Position domain types and services."""

from bracketwatch.core.positions.models import PositionSnapshot
from bracketwatch.core.positions.ports import PositionsPort
from bracketwatch.core.positions.risk import (
    EmergencyCloseReport,
    PositionSize,
    PositionSizingError,
    closing_order,
    emergency_close,
    size_position,
)
from bracketwatch.core.positions.service import PositionsService

__all__ = [
    "EmergencyCloseReport",
    "PositionSize",
    "PositionSizingError",
    "PositionSnapshot",
    "PositionsPort",
    "PositionsService",
    "closing_order",
    "emergency_close",
    "size_position",
]
