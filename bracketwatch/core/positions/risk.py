from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional

from loguru import logger

from bracketwatch.core.orders.errors import GatewayError
from bracketwatch.core.orders.models import OrderKind, OrderSide, OrderSpec
from bracketwatch.core.orders.service import CancelAllReport, OrderService, OrderValidationError
from bracketwatch.core.positions.models import PositionSnapshot
from bracketwatch.core.positions.service import PositionsService


class PositionSizingError(ValueError):
    """Raised when a risk-based size cannot be computed."""


@dataclass(frozen=True)
class PositionSize:
    shares: int
    position_value: float
    risk_amount: float
    risk_per_share: float


def size_position(
    account_size: float,
    risk_pct: float,
    entry_price: float,
    stop_price: float,
    *,
    entry_side: OrderSide = OrderSide.BUY,
) -> PositionSize:
    """
    Largest whole share count whose loss at the stop stays within
    risk_pct of the account.

    A BUY entry needs the stop below the entry; a SELL entry needs it above.
    """
    if account_size <= 0:
        raise PositionSizingError("account size must be greater than zero")
    if risk_pct <= 0 or risk_pct > 100:
        raise PositionSizingError("risk percent must be in (0, 100]")
    if entry_price <= 0 or stop_price <= 0:
        raise PositionSizingError("entry and stop prices must be greater than zero")
    if entry_side == OrderSide.BUY and stop_price >= entry_price:
        raise PositionSizingError("stop price must be below entry price for a long position")
    if entry_side == OrderSide.SELL and stop_price <= entry_price:
        raise PositionSizingError("stop price must be above entry price for a short position")

    risk_amount = account_size * risk_pct / 100
    risk_per_share = abs(entry_price - stop_price)
    shares = math.floor(risk_amount / risk_per_share)
    return PositionSize(
        shares=shares,
        position_value=round(shares * entry_price, 2),
        risk_amount=round(risk_amount, 2),
        risk_per_share=round(risk_per_share, 4),
    )


def closing_order(
    position: PositionSnapshot,
    *,
    kind: OrderKind = OrderKind.MARKET,
    stop_price: Optional[float] = None,
    account: Optional[str] = None,
    client_tag: Optional[str] = None,
) -> OrderSpec:
    """Order on the opposite side for the whole position."""
    qty = int(round(abs(position.net_qty)))
    if qty <= 0:
        raise PositionSizingError(f"position in {position.symbol} is flat")
    return OrderSpec(
        symbol=position.symbol,
        qty=qty,
        side=OrderSide.SELL if position.is_long else OrderSide.BUY,
        kind=kind,
        stop_price=stop_price,
        account=account or position.account,
        client_tag=client_tag,
    )


@dataclass(frozen=True)
class EmergencyCloseReport:
    cancel_report: CancelAllReport
    closed: dict[str, str] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)


async def emergency_close(
    order_service: OrderService,
    positions_service: PositionsService,
    *,
    account: Optional[str] = None,
) -> EmergencyCloseReport:
    """
    Cancel every pending order, then market-close every open position.

    Pending orders go first so resting exits cannot fill against the
    closing orders, and so the closing orders are not cancelled themselves.
    """
    cancel_report = await order_service.cancel_all_pending()
    report = EmergencyCloseReport(cancel_report=cancel_report)
    for position in await positions_service.list_positions(account=account):
        try:
            ack = await order_service.submit_order(
                closing_order(position, account=account, client_tag="emergency-close")
            )
        except (GatewayError, OrderValidationError, PositionSizingError) as exc:
            logger.error("emergency close of {} failed: {}", position.symbol, exc)
            report.failed[position.symbol] = str(exc)
            continue
        report.closed[position.symbol] = ack.order_id
    logger.warning(
        "emergency close: cancelled {} order(s), closed {} position(s), {} failure(s)",
        len(cancel_report.cancelled),
        len(report.closed),
        len(report.failed) + len(cancel_report.failed),
    )
    return report
