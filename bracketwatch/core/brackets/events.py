from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from bracketwatch.core.brackets.models import BracketState
from bracketwatch.core.orders.models import OrderStatus


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class BracketMonitorStarted:
    session_id: str
    bracket_ids: list[str]
    interval_seconds: float
    max_ticks: int
    timestamp: datetime

    @classmethod
    def now(
        cls,
        *,
        session_id: str,
        bracket_ids: list[str],
        interval_seconds: float,
        max_ticks: int,
    ) -> "BracketMonitorStarted":
        return cls(
            session_id=session_id,
            bracket_ids=bracket_ids,
            interval_seconds=interval_seconds,
            max_ticks=max_ticks,
            timestamp=_now(),
        )


@dataclass(frozen=True)
class BracketTickObserved:
    session_id: str
    tick: int
    max_ticks: int
    bracket_id: str
    symbol: str
    protective_status: Optional[OrderStatus]
    stop_status: Optional[OrderStatus]
    timestamp: datetime

    @classmethod
    def now(
        cls,
        *,
        session_id: str,
        tick: int,
        max_ticks: int,
        bracket_id: str,
        symbol: str,
        protective_status: Optional[OrderStatus],
        stop_status: Optional[OrderStatus],
    ) -> "BracketTickObserved":
        return cls(
            session_id=session_id,
            tick=tick,
            max_ticks=max_ticks,
            bracket_id=bracket_id,
            symbol=symbol,
            protective_status=protective_status,
            stop_status=stop_status,
            timestamp=_now(),
        )


@dataclass(frozen=True)
class BracketTickFailed:
    session_id: str
    tick: int
    error_type: str
    message: str
    timestamp: datetime

    @classmethod
    def now(cls, *, session_id: str, tick: int, error_type: str, message: str) -> "BracketTickFailed":
        return cls(
            session_id=session_id,
            tick=tick,
            error_type=error_type,
            message=message,
            timestamp=_now(),
        )


@dataclass(frozen=True)
class BracketTransitioned:
    bracket_id: str
    symbol: str
    from_state: BracketState
    to_state: BracketState
    reason: str
    tick: int
    estimated_pnl: Optional[float]
    timestamp: datetime

    @classmethod
    def now(
        cls,
        *,
        bracket_id: str,
        symbol: str,
        from_state: BracketState,
        to_state: BracketState,
        reason: str,
        tick: int,
        estimated_pnl: Optional[float] = None,
    ) -> "BracketTransitioned":
        return cls(
            bracket_id=bracket_id,
            symbol=symbol,
            from_state=from_state,
            to_state=to_state,
            reason=reason,
            tick=tick,
            estimated_pnl=estimated_pnl,
            timestamp=_now(),
        )


@dataclass(frozen=True)
class BracketResolved:
    bracket_id: str
    symbol: str
    state: BracketState
    reason: str
    tick: int
    cancelled_order_id: Optional[str]
    cancellation_failed: bool
    cancellation_error: Optional[str]
    estimated_pnl: Optional[float]
    timestamp: datetime

    @classmethod
    def now(
        cls,
        *,
        bracket_id: str,
        symbol: str,
        state: BracketState,
        reason: str,
        tick: int,
        cancelled_order_id: Optional[str] = None,
        cancellation_failed: bool = False,
        cancellation_error: Optional[str] = None,
        estimated_pnl: Optional[float] = None,
    ) -> "BracketResolved":
        return cls(
            bracket_id=bracket_id,
            symbol=symbol,
            state=state,
            reason=reason,
            tick=tick,
            cancelled_order_id=cancelled_order_id,
            cancellation_failed=cancellation_failed,
            cancellation_error=cancellation_error,
            estimated_pnl=estimated_pnl,
            timestamp=_now(),
        )


@dataclass(frozen=True)
class BracketMonitorStopped:
    session_id: str
    reason: str
    ticks: int
    unresolved_bracket_ids: list[str]
    timestamp: datetime

    @classmethod
    def now(
        cls,
        *,
        session_id: str,
        reason: str,
        ticks: int,
        unresolved_bracket_ids: list[str],
    ) -> "BracketMonitorStopped":
        return cls(
            session_id=session_id,
            reason=reason,
            ticks=ticks,
            unresolved_bracket_ids=unresolved_bracket_ids,
            timestamp=_now(),
        )
