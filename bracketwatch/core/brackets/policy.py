from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from bracketwatch.core.brackets.models import Bracket, BracketState, PositionSide
from bracketwatch.core.orders.models import OrderStatus

_INACTIVE_WITHOUT_FILL = {OrderStatus.CANCELLED, OrderStatus.REJECTED}


class BracketAction(str, Enum):
    NONE = "none"
    CANCEL_PROTECTIVE = "cancel_protective"
    CANCEL_STOP = "cancel_stop"
    FLAG_BOTH_FILLED = "flag_both_filled"

    @property
    def issues_cancel(self) -> bool:
        return self in {BracketAction.CANCEL_PROTECTIVE, BracketAction.CANCEL_STOP}


@dataclass(frozen=True)
class ReconciliationDecision:
    state: BracketState
    action: BracketAction
    reason: str


def resolve(
    state: BracketState,
    protective_status: Optional[OrderStatus],
    stop_status: Optional[OrderStatus],
) -> ReconciliationDecision:
    """
    Decide what a bracket should become given the latest sibling statuses.

    A status of None means the order was missing from the snapshot and is
    treated like any other non-terminal status. FLAG_BOTH_FILLED never issues
    a gateway call; it only marks the ambiguous dual fill for reporting.
    """
    if state != BracketState.ACTIVE:
        return ReconciliationDecision(state=state, action=BracketAction.NONE, reason="not_active")

    protective_filled = protective_status == OrderStatus.FILLED
    stop_filled = stop_status == OrderStatus.FILLED

    if protective_filled and stop_filled:
        return ReconciliationDecision(
            state=BracketState.RESOLVED_UNKNOWN,
            action=BracketAction.FLAG_BOTH_FILLED,
            reason="both_filled",
        )
    if protective_filled:
        if _is_terminal(stop_status):
            return ReconciliationDecision(
                state=BracketState.RESOLVED_PROFIT,
                action=BracketAction.NONE,
                reason="take_profit_filled_stop_inactive",
            )
        return ReconciliationDecision(
            state=BracketState.RESOLVED_PROFIT,
            action=BracketAction.CANCEL_STOP,
            reason="take_profit_filled",
        )
    if stop_filled:
        if _is_terminal(protective_status):
            return ReconciliationDecision(
                state=BracketState.RESOLVED_LOSS,
                action=BracketAction.NONE,
                reason="stop_loss_filled_take_profit_inactive",
            )
        return ReconciliationDecision(
            state=BracketState.RESOLVED_LOSS,
            action=BracketAction.CANCEL_PROTECTIVE,
            reason="stop_loss_filled",
        )
    if protective_status in _INACTIVE_WITHOUT_FILL and stop_status in _INACTIVE_WITHOUT_FILL:
        return ReconciliationDecision(
            state=BracketState.RESOLVED_UNKNOWN,
            action=BracketAction.NONE,
            reason="both_inactive_without_fill",
        )
    return ReconciliationDecision(state=BracketState.ACTIVE, action=BracketAction.NONE, reason="waiting")


def estimate_outcome(
    bracket: Bracket,
    state: BracketState,
    *,
    exit_fill_price: Optional[float] = None,
) -> Optional[float]:
    """Rough P&L for display; None when the prices needed are unknown."""
    if bracket.entry_price is None:
        return None
    if state == BracketState.RESOLVED_PROFIT:
        exit_price = exit_fill_price if exit_fill_price is not None else bracket.take_profit_price
    elif state == BracketState.RESOLVED_LOSS:
        exit_price = exit_fill_price if exit_fill_price is not None else bracket.stop_price
    else:
        return None
    if exit_price is None:
        return None
    per_share = exit_price - bracket.entry_price
    if bracket.side == PositionSide.SHORT:
        per_share = -per_share
    return round(per_share * bracket.qty, 2)


def _is_terminal(status: Optional[OrderStatus]) -> bool:
    return status is not None and status.is_terminal
