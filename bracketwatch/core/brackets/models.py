from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from bracketwatch.core.orders.models import OrderSide


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_bracket_id() -> str:
    return uuid.uuid4().hex[:12]


class BracketValidationError(ValueError):
    """Raised when a Bracket is constructed with inconsistent fields."""


class MonitorConfigError(ValueError):
    """Raised when monitor options or the bracket set are unusable."""


class BracketState(str, Enum):
    ACTIVE = "ACTIVE"
    RESOLVING = "RESOLVING"
    RESOLVED_PROFIT = "RESOLVED_PROFIT"
    RESOLVED_LOSS = "RESOLVED_LOSS"
    RESOLVED_UNKNOWN = "RESOLVED_UNKNOWN"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self not in {BracketState.ACTIVE, BracketState.RESOLVING}


class PositionSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def entry_side(self) -> OrderSide:
        return OrderSide.BUY if self == PositionSide.LONG else OrderSide.SELL

    @property
    def exit_side(self) -> OrderSide:
        return self.entry_side.opposite


@dataclass
class Bracket:
    """
    A take-profit / stop-loss pair protecting one position leg.

    Only the monitor that owns the bracket mutates it, and only from inside a
    tick. Everything except the resolution fields is fixed at construction.
    """

    protective_order_id: str
    stop_order_id: str
    symbol: str
    qty: int
    side: PositionSide = PositionSide.LONG
    entry_order_id: Optional[str] = None
    entry_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    stop_price: Optional[float] = None
    bracket_id: str = field(default_factory=_new_bracket_id)
    created_at: datetime = field(default_factory=_now)
    state: BracketState = BracketState.ACTIVE
    resolved_at: Optional[datetime] = None
    reason: Optional[str] = None
    cancellation_attempted: bool = False
    cancellation_error: Optional[str] = None

    def __post_init__(self) -> None:
        self.protective_order_id = str(self.protective_order_id or "").strip()
        self.stop_order_id = str(self.stop_order_id or "").strip()
        if self.entry_order_id is not None:
            self.entry_order_id = str(self.entry_order_id).strip() or None
        self.symbol = str(self.symbol or "").strip().upper()
        if isinstance(self.side, str) and not isinstance(self.side, PositionSide):
            try:
                self.side = PositionSide(self.side.strip().upper())
            except ValueError as exc:
                raise BracketValidationError(f"invalid side: {self.side}") from exc
        if not self.protective_order_id:
            raise BracketValidationError("protective_order_id is required")
        if not self.stop_order_id:
            raise BracketValidationError("stop_order_id is required")
        if self.protective_order_id == self.stop_order_id:
            raise BracketValidationError("protective and stop orders must be different orders")
        if self.entry_order_id in {self.protective_order_id, self.stop_order_id}:
            raise BracketValidationError("entry order cannot double as a protective order")
        if not self.symbol:
            raise BracketValidationError("symbol is required")
        if self.qty <= 0:
            raise BracketValidationError("qty must be greater than zero")
        for name in ("entry_price", "take_profit_price", "stop_price"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise BracketValidationError(f"{name} must be greater than zero")
        if self.take_profit_price is not None and self.stop_price is not None:
            if self.side == PositionSide.LONG and self.take_profit_price <= self.stop_price:
                raise BracketValidationError("take_profit_price must be above stop_price for LONG")
            if self.side == PositionSide.SHORT and self.take_profit_price >= self.stop_price:
                raise BracketValidationError("take_profit_price must be below stop_price for SHORT")

    @property
    def order_ids(self) -> tuple[str, str]:
        return self.protective_order_id, self.stop_order_id

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def cancellation_failed(self) -> bool:
        return self.cancellation_error is not None


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 1
    backoff_seconds: float = 0.0

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise MonitorConfigError("attempts must be at least 1")
        if self.backoff_seconds < 0:
            raise MonitorConfigError("backoff_seconds must be zero or greater")


@dataclass(frozen=True)
class MonitorOptions:
    interval_seconds: float = 60.0
    max_ticks: int = 360
    request_timeout_seconds: float = 15.0
    cancel_retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(attempts=2, backoff_seconds=0.5))

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise MonitorConfigError("interval_seconds must be greater than zero")
        if self.max_ticks <= 0:
            raise MonitorConfigError("max_ticks must be greater than zero")
        if self.request_timeout_seconds <= 0:
            raise MonitorConfigError("request_timeout_seconds must be greater than zero")
        if self.request_timeout_seconds >= self.interval_seconds:
            raise MonitorConfigError("request_timeout_seconds must be shorter than interval_seconds")
        if self.cancel_retry.attempts > 2:
            raise MonitorConfigError("cancel_retry allows at most one retry within a tick")

    @classmethod
    def from_env(cls) -> "MonitorOptions":
        return cls(
            interval_seconds=float(os.getenv("BRACKET_POLL_SECS", "60")),
            max_ticks=int(os.getenv("BRACKET_MAX_TICKS", "360")),
            request_timeout_seconds=float(os.getenv("BRACKET_REQUEST_TIMEOUT_SECS", "15")),
            cancel_retry=RetryPolicy(
                attempts=int(os.getenv("BRACKET_CANCEL_ATTEMPTS", "2")),
                backoff_seconds=float(os.getenv("BRACKET_CANCEL_BACKOFF_SECS", "0.5")),
            ),
        )
