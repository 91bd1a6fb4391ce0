from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from bracketwatch.core.orders.models import OrderSpec, OrderStatus


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class OrderIntent:
    spec: OrderSpec
    timestamp: datetime

    @classmethod
    def now(cls, spec: OrderSpec) -> "OrderIntent":
        return cls(spec=spec, timestamp=_now())


@dataclass(frozen=True)
class OrderAccepted:
    spec: OrderSpec
    order_id: Optional[str]
    status: OrderStatus
    timestamp: datetime

    @classmethod
    def now(cls, spec: OrderSpec, *, order_id: Optional[str], status: OrderStatus) -> "OrderAccepted":
        return cls(spec=spec, order_id=order_id, status=status, timestamp=_now())


@dataclass(frozen=True)
class OrderCancelRequested:
    order_id: str
    status: Optional[OrderStatus]
    timestamp: datetime

    @classmethod
    def now(cls, order_id: str, *, status: Optional[OrderStatus]) -> "OrderCancelRequested":
        return cls(order_id=order_id, status=status, timestamp=_now())
