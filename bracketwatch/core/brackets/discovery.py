from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Optional

from bracketwatch.core.brackets.models import Bracket, BracketValidationError, PositionSide
from bracketwatch.core.orders.models import OrderKind, OrderSide, OrderSnapshot

_QTY_EPSILON = 1e-9


@dataclass(frozen=True)
class DiscoveryReport:
    brackets: list[Bracket] = field(default_factory=list)
    # "SYMBOL SIDE" -> why the group was not paired
    unmatched: dict[str, str] = field(default_factory=dict)


def discover_brackets(
    orders: Sequence[OrderSnapshot],
    *,
    symbol: Optional[str] = None,
    exclude_order_ids: Iterable[str] = (),
) -> DiscoveryReport:
    """
    Pair live take-profit (LIMIT) and stop (STOP) exit orders into brackets.

    A group is keyed by symbol and order side; it becomes a bracket only when
    it holds exactly one limit and one stop of the same quantity. Anything
    else is reported in unmatched and never guessed at.
    """
    wanted_symbol = symbol.strip().upper() if symbol else None
    excluded = {str(order_id) for order_id in exclude_order_ids}
    groups: dict[tuple[str, OrderSide], dict[str, list[OrderSnapshot]]] = {}
    for order in orders:
        if order.order_id in excluded or not order.status.is_live:
            continue
        if order.side is None or order.kind not in {OrderKind.LIMIT, OrderKind.STOP}:
            continue
        order_symbol = (order.symbol or "").strip().upper()
        if not order_symbol or (wanted_symbol and order_symbol != wanted_symbol):
            continue
        group = groups.setdefault((order_symbol, order.side), {"limits": [], "stops": []})
        bucket = "limits" if order.kind == OrderKind.LIMIT else "stops"
        group[bucket].append(order)

    report = DiscoveryReport()
    for (order_symbol, side), group in sorted(groups.items(), key=lambda item: (item[0][0], item[0][1].value)):
        key = f"{order_symbol} {side.value}"
        limits = group["limits"]
        stops = group["stops"]
        if len(limits) != 1 or len(stops) != 1:
            report.unmatched[key] = f"{len(limits)} limit / {len(stops)} stop orders"
            continue
        limit, stop = limits[0], stops[0]
        limit_qty = _remaining_qty(limit)
        stop_qty = _remaining_qty(stop)
        if limit_qty is None or stop_qty is None or abs(limit_qty - stop_qty) > _QTY_EPSILON:
            report.unmatched[key] = f"quantity mismatch ({limit_qty} vs {stop_qty})"
            continue
        position_side = PositionSide.LONG if side == OrderSide.SELL else PositionSide.SHORT
        try:
            bracket = Bracket(
                protective_order_id=limit.order_id,
                stop_order_id=stop.order_id,
                symbol=order_symbol,
                qty=int(limit_qty),
                side=position_side,
                take_profit_price=limit.limit_price,
                stop_price=stop.stop_price,
            )
        except BracketValidationError as exc:
            report.unmatched[key] = str(exc)
            continue
        report.brackets.append(bracket)
    return report


def _remaining_qty(order: OrderSnapshot) -> Optional[float]:
    if order.qty is None:
        return None
    filled = order.filled_qty or 0.0
    remaining = float(order.qty) - float(filled)
    if remaining <= _QTY_EPSILON:
        return None
    return remaining
