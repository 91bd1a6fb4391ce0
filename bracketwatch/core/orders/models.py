from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self == OrderSide.BUY else OrderSide.BUY


class OrderKind(str, Enum):
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    STOP = "STOP"
    STOP_LIMIT = "STOP_LIMIT"


class OrderStatus(str, Enum):
    PENDING = "pending"
    OPEN = "open"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES

    @property
    def is_live(self) -> bool:
        return self in {OrderStatus.PENDING, OrderStatus.OPEN}


_TERMINAL_STATUSES = frozenset({OrderStatus.FILLED, OrderStatus.CANCELLED, OrderStatus.REJECTED})


@dataclass(frozen=True)
class OrderSpec:
    symbol: str
    qty: int
    side: OrderSide
    kind: OrderKind = OrderKind.MARKET
    limit_price: Optional[float] = None
    stop_price: Optional[float] = None
    tif: str = "DAY"
    outside_rth: bool = False
    exchange: str = "SMART"
    currency: str = "USD"
    account: Optional[str] = None
    client_tag: Optional[str] = None


@dataclass(frozen=True)
class OrderCancelSpec:
    order_id: str


@dataclass(frozen=True)
class OrderAck:
    order_id: Optional[str]
    status: OrderStatus
    submitted_at: datetime

    @classmethod
    def now(cls, *, order_id: Optional[str], status: OrderStatus) -> "OrderAck":
        return cls(order_id=order_id, status=status, submitted_at=datetime.now(timezone.utc))


@dataclass(frozen=True)
class OrderSnapshot:
    order_id: str
    symbol: str
    side: Optional[OrderSide]
    kind: Optional[OrderKind]
    qty: Optional[float]
    status: OrderStatus
    limit_price: Optional[float] = None
    stop_price: Optional[float] = None
    filled_qty: Optional[float] = None
    avg_fill_price: Optional[float] = None
    account: Optional[str] = None
    client_tag: Optional[str] = None
    observed_at: Optional[datetime] = None
