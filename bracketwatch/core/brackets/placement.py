from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Optional, Sequence

from loguru import logger

from bracketwatch.core.brackets.guard import SleepFn
from bracketwatch.core.brackets.models import (
    Bracket,
    BracketValidationError,
    PositionSide,
    RetryPolicy,
)
from bracketwatch.core.orders.models import OrderKind, OrderSnapshot, OrderSpec, OrderStatus
from bracketwatch.core.orders.ports import OrderPort
from bracketwatch.core.orders.service import OrderService

DEFAULT_TAKE_PROFIT_PCT = 0.75
DEFAULT_STOP_LOSS_PCT = 0.35


class BracketPlacementError(RuntimeError):
    """
    Raised when a bracket could not be fully placed.

    orphan_order_ids lists exit legs that did reach the broker and are now
    unpaired; the caller decides whether to cancel them.
    """

    def __init__(
        self,
        message: str,
        *,
        entry_order_id: Optional[str] = None,
        orphan_order_ids: Sequence[str] = (),
    ) -> None:
        super().__init__(message)
        self.entry_order_id = entry_order_id
        self.orphan_order_ids = list(orphan_order_ids)


@dataclass(frozen=True)
class BracketPrices:
    take_profit_price: float
    stop_price: float


def derive_bracket_prices(
    entry_price: float,
    side: PositionSide = PositionSide.LONG,
    *,
    take_profit_pct: float = DEFAULT_TAKE_PROFIT_PCT,
    stop_loss_pct: float = DEFAULT_STOP_LOSS_PCT,
) -> BracketPrices:
    if entry_price <= 0:
        raise BracketValidationError("entry_price must be greater than zero")
    if take_profit_pct <= 0 or stop_loss_pct <= 0:
        raise BracketValidationError("take_profit_pct and stop_loss_pct must be greater than zero")
    if side == PositionSide.LONG and stop_loss_pct >= 100:
        raise BracketValidationError("stop_loss_pct must be below 100 for LONG")
    if side == PositionSide.SHORT and take_profit_pct >= 100:
        raise BracketValidationError("take_profit_pct must be below 100 for SHORT")
    if side == PositionSide.LONG:
        take_profit = entry_price * (1 + take_profit_pct / 100)
        stop = entry_price * (1 - stop_loss_pct / 100)
    else:
        take_profit = entry_price * (1 - take_profit_pct / 100)
        stop = entry_price * (1 + stop_loss_pct / 100)
    return BracketPrices(take_profit_price=round(take_profit, 2), stop_price=round(stop, 2))


@dataclass(frozen=True)
class BracketPlacementSpec:
    symbol: str
    qty: int
    side: PositionSide = PositionSide.LONG
    # None skips the entry order; the position is assumed to be open already.
    entry_kind: Optional[OrderKind] = OrderKind.MARKET
    entry_limit_price: Optional[float] = None
    entry_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    stop_price: Optional[float] = None
    take_profit_pct: float = DEFAULT_TAKE_PROFIT_PCT
    stop_loss_pct: float = DEFAULT_STOP_LOSS_PCT
    wait_for_fill: bool = True
    fill_wait: RetryPolicy = field(default_factory=lambda: RetryPolicy(attempts=12, backoff_seconds=10.0))
    tif: str = "DAY"
    outside_rth: bool = False
    account: Optional[str] = None
    client_tag: Optional[str] = None


async def wait_for_entry_fill(
    order_port: OrderPort,
    order_id: str,
    *,
    policy: Optional[RetryPolicy] = None,
    sleep: SleepFn = asyncio.sleep,
) -> Optional[OrderSnapshot]:
    """
    Poll the order book until the entry order fills.

    Returns the filled snapshot, or None when the attempts run out. A
    cancelled or rejected entry raises BracketPlacementError.
    """
    policy = policy or RetryPolicy(attempts=12, backoff_seconds=10.0)
    for attempt in range(1, policy.attempts + 1):
        try:
            orders = await order_port.list_orders()
        except Exception as exc:
            logger.warning(
                "entry {} fill check {}/{} failed: {}",
                order_id,
                attempt,
                policy.attempts,
                exc,
            )
            orders = []
        snapshot = next((order for order in orders if order.order_id == order_id), None)
        if snapshot is not None:
            if snapshot.status == OrderStatus.FILLED:
                logger.info(
                    "entry {} filled at {} after {} check(s)",
                    order_id,
                    snapshot.avg_fill_price,
                    attempt,
                )
                return snapshot
            if snapshot.status in {OrderStatus.CANCELLED, OrderStatus.REJECTED}:
                raise BracketPlacementError(
                    f"entry order {order_id} was {snapshot.status.value}; bracket not placed",
                    entry_order_id=order_id,
                )
        if attempt < policy.attempts:
            await sleep(policy.backoff_seconds)
    logger.warning(
        "entry {} not confirmed filled after {} checks; placing exit orders anyway",
        order_id,
        policy.attempts,
    )
    return None


async def place_bracket(
    order_service: OrderService,
    spec: BracketPlacementSpec,
    *,
    sleep: SleepFn = asyncio.sleep,
) -> Bracket:
    _validate_placement(spec)
    symbol = spec.symbol.strip().upper()
    entry_order_id: Optional[str] = None
    reference_price = spec.entry_price

    if spec.entry_kind is not None:
        ack = await order_service.submit_order(
            OrderSpec(
                symbol=symbol,
                qty=spec.qty,
                side=spec.side.entry_side,
                kind=spec.entry_kind,
                limit_price=spec.entry_limit_price,
                tif=spec.tif,
                outside_rth=spec.outside_rth,
                account=spec.account,
                client_tag=_leg_tag(spec.client_tag, "entry"),
            )
        )
        entry_order_id = ack.order_id
        if not entry_order_id:
            raise BracketPlacementError(f"entry order for {symbol} was not assigned an order id")
        if spec.wait_for_fill:
            fill = await wait_for_entry_fill(
                order_service,
                entry_order_id,
                policy=spec.fill_wait,
                sleep=sleep,
            )
            if reference_price is None and fill is not None and fill.avg_fill_price:
                reference_price = fill.avg_fill_price
        if reference_price is None:
            reference_price = spec.entry_limit_price

    prices = _resolve_prices(spec, reference_price, entry_order_id)
    exit_side = spec.side.exit_side
    take_profit_id: Optional[str] = None
    stop_id: Optional[str] = None
    failures: list[tuple[str, Exception]] = []

    try:
        ack = await order_service.submit_order(
            OrderSpec(
                symbol=symbol,
                qty=spec.qty,
                side=exit_side,
                kind=OrderKind.LIMIT,
                limit_price=prices.take_profit_price,
                tif=spec.tif,
                outside_rth=spec.outside_rth,
                account=spec.account,
                client_tag=_leg_tag(spec.client_tag, "tp"),
            )
        )
        take_profit_id = ack.order_id
    except Exception as exc:
        logger.error("take-profit for {} failed: {}", symbol, exc)
        failures.append(("take-profit", exc))

    try:
        ack = await order_service.submit_order(
            OrderSpec(
                symbol=symbol,
                qty=spec.qty,
                side=exit_side,
                kind=OrderKind.STOP,
                stop_price=prices.stop_price,
                tif=spec.tif,
                outside_rth=spec.outside_rth,
                account=spec.account,
                client_tag=_leg_tag(spec.client_tag, "sl"),
            )
        )
        stop_id = ack.order_id
    except Exception as exc:
        logger.error("stop-loss for {} failed: {}", symbol, exc)
        failures.append(("stop-loss", exc))

    if failures or not take_profit_id or not stop_id:
        orphans = [order_id for order_id in (take_profit_id, stop_id) if order_id]
        detail = "; ".join(f"{leg}: {exc}" for leg, exc in failures) or "exit order without an order id"
        error = BracketPlacementError(
            f"bracket for {symbol} incomplete ({detail})",
            entry_order_id=entry_order_id,
            orphan_order_ids=orphans,
        )
        if failures:
            raise error from failures[0][1]
        raise error

    bracket = Bracket(
        protective_order_id=take_profit_id,
        stop_order_id=stop_id,
        symbol=symbol,
        qty=spec.qty,
        side=spec.side,
        entry_order_id=entry_order_id,
        entry_price=reference_price,
        take_profit_price=prices.take_profit_price,
        stop_price=prices.stop_price,
    )
    logger.info(
        "bracket {} placed for {} {} x{}: tp={} @ {} sl={} @ {}",
        bracket.bracket_id,
        bracket.side.value,
        symbol,
        spec.qty,
        take_profit_id,
        prices.take_profit_price,
        stop_id,
        prices.stop_price,
    )
    return bracket


def _resolve_prices(
    spec: BracketPlacementSpec,
    reference_price: Optional[float],
    entry_order_id: Optional[str],
) -> BracketPrices:
    if spec.take_profit_price is not None and spec.stop_price is not None:
        return BracketPrices(take_profit_price=spec.take_profit_price, stop_price=spec.stop_price)
    if reference_price is None:
        raise BracketPlacementError(
            f"no reference price for {spec.symbol}; exit orders not placed",
            entry_order_id=entry_order_id,
        )
    derived = derive_bracket_prices(
        reference_price,
        spec.side,
        take_profit_pct=spec.take_profit_pct,
        stop_loss_pct=spec.stop_loss_pct,
    )
    return BracketPrices(
        take_profit_price=spec.take_profit_price or derived.take_profit_price,
        stop_price=spec.stop_price or derived.stop_price,
    )


def _validate_placement(spec: BracketPlacementSpec) -> None:
    if not spec.symbol or not spec.symbol.strip():
        raise BracketValidationError("symbol is required")
    if spec.qty <= 0:
        raise BracketValidationError("qty must be greater than zero")
    if spec.entry_kind not in {None, OrderKind.MARKET, OrderKind.LIMIT}:
        raise BracketValidationError("entry order must be MARKET or LIMIT")
    if spec.entry_kind == OrderKind.LIMIT and spec.entry_limit_price is None:
        raise BracketValidationError("entry_limit_price is required for a LIMIT entry")
    if spec.take_profit_price is not None and spec.stop_price is not None:
        if spec.side == PositionSide.LONG and spec.take_profit_price <= spec.stop_price:
            raise BracketValidationError("take_profit_price must be above stop_price for LONG")
        if spec.side == PositionSide.SHORT and spec.take_profit_price >= spec.stop_price:
            raise BracketValidationError("take_profit_price must be below stop_price for SHORT")
        return
    has_reference = (
        spec.entry_price is not None
        or spec.entry_limit_price is not None
        or (spec.entry_kind is not None and spec.wait_for_fill)
    )
    if not has_reference:
        raise BracketValidationError(
            "take_profit_price and stop_price are required when no entry price is known"
        )


def _leg_tag(client_tag: Optional[str], leg: str) -> Optional[str]:
    if not client_tag:
        return None
    return f"{client_tag}:{leg}"
