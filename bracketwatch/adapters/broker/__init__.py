"""Broker adapters for bracketwatch."""

from bracketwatch.adapters.broker.ibkr_connection import (
    IBKRConnection,
    IBKRConnectionConfig,
)
from bracketwatch.adapters.broker.ibkr_order_port import IBKROrderPort
from bracketwatch.adapters.broker.ibkr_positions_port import IBKRPositionsPort

__all__ = [
    "IBKRConnection",
    "IBKRConnectionConfig",
    "IBKROrderPort",
    "IBKRPositionsPort",
]
