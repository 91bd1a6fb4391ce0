from bracketwatch.core.orders.errors import GatewayError, GatewayRequestError, OrderRejectedError
from bracketwatch.core.orders.events import OrderAccepted, OrderCancelRequested, OrderIntent
from bracketwatch.core.orders.models import (
    OrderAck,
    OrderCancelSpec,
    OrderKind,
    OrderSide,
    OrderSnapshot,
    OrderSpec,
    OrderStatus,
)
from bracketwatch.core.orders.ports import EventBus, OrderPort
from bracketwatch.core.orders.service import CancelAllReport, OrderService, OrderValidationError

__all__ = [
    "OrderAck",
    "OrderSpec",
    "OrderCancelSpec",
    "OrderSnapshot",
    "OrderSide",
    "OrderKind",
    "OrderStatus",
    "OrderIntent",
    "OrderAccepted",
    "OrderCancelRequested",
    "OrderPort",
    "EventBus",
    "OrderService",
    "OrderValidationError",
    "CancelAllReport",
    "GatewayError",
    "GatewayRequestError",
    "OrderRejectedError",
]
