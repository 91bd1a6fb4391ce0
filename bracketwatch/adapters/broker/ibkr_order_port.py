from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any, Optional, cast

from loguru import logger

from bracketwatch.adapters.broker._ib_client import (
    IB,
    LimitOrder,
    MarketOrder,
    Stock,
    StopLimitOrder,
    StopOrder,
    Trade,
    UNSET_DOUBLE,
)
from bracketwatch.adapters.broker.ibkr_connection import IBKRConnection
from bracketwatch.core.orders.errors import GatewayError, GatewayRequestError, OrderRejectedError
from bracketwatch.core.orders.models import (
    OrderAck,
    OrderCancelSpec,
    OrderKind,
    OrderSide,
    OrderSnapshot,
    OrderSpec,
    OrderStatus,
)
from bracketwatch.core.orders.ports import OrderPort

_IB_STATUS_MAP = {
    "filled": OrderStatus.FILLED,
    "cancelled": OrderStatus.CANCELLED,
    "apicancelled": OrderStatus.CANCELLED,
    "inactive": OrderStatus.REJECTED,
    "pendingsubmit": OrderStatus.PENDING,
    "apipending": OrderStatus.PENDING,
    "presubmitted": OrderStatus.PENDING,
    "submitted": OrderStatus.OPEN,
    "pendingcancel": OrderStatus.OPEN,
}
_IB_ORDER_TYPES = {
    "MKT": OrderKind.MARKET,
    "LMT": OrderKind.LIMIT,
    "STP": OrderKind.STOP,
    "STP LMT": OrderKind.STOP_LIMIT,
}


class IBKROrderPort(OrderPort):
    def __init__(
        self,
        connection: IBKRConnection,
        *,
        status_timeout: float = 2.0,
    ) -> None:
        self._connection = connection
        self._ib: IB = connection.ib
        self._status_timeout = status_timeout

    async def submit_order(self, spec: OrderSpec) -> OrderAck:
        self._ensure_connected()
        timeout = max(self._connection.config.timeout, 1.0)
        contract = Stock(spec.symbol, spec.exchange, spec.currency)
        try:
            contracts = await asyncio.wait_for(self._ib.qualifyContractsAsync(contract), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise GatewayRequestError(f"timed out qualifying contract for {spec.symbol}") from exc
        contracts = [item for item in contracts or [] if item is not None]
        if not contracts:
            raise OrderRejectedError(f"Could not qualify contract for {spec.symbol}")
        qualified = contracts[0]

        order = _build_order(spec)
        try:
            trade = self._ib.placeOrder(qualified, order)
        except ConnectionError as exc:
            raise GatewayRequestError(str(exc)) from exc
        order_id = await _wait_for_order_id(trade, timeout=self._status_timeout)
        if order_id is None:
            raise GatewayRequestError(f"IBKR did not assign an order id for {spec.symbol}")
        capture = _GatewayOrderErrorCapture(self._connection, order_id=order_id)
        try:
            raw_status = await _wait_for_order_status(trade, timeout=self._status_timeout)
        finally:
            capture.close()
        status = map_ib_status(raw_status)
        if status in {OrderStatus.REJECTED, OrderStatus.CANCELLED}:
            code, message = capture.snapshot()
            detail = message or raw_status or "rejected"
            raise OrderRejectedError(
                f"IBKR rejected {spec.kind.value} {spec.side.value} {spec.symbol}: {detail}"
                + (f" (code {code})" if code is not None else ""),
                order_id=str(order_id),
            )
        logger.debug("IBKR order {} {} for {}", order_id, raw_status, spec.symbol)
        return OrderAck.now(order_id=str(order_id), status=status)

    async def cancel_order(self, spec: OrderCancelSpec) -> OrderAck:
        self._ensure_connected()
        order_id = _maybe_int(spec.order_id)
        if order_id is None:
            raise GatewayError(f"Order id {spec.order_id!r} is not an IBKR order id", order_id=spec.order_id)
        timeout = max(self._connection.config.timeout, 1.0)
        trade = await _find_trade_by_order_id_with_refresh(self._ib, order_id, timeout=timeout)
        if trade is None:
            raise GatewayError(
                f"Order {spec.order_id} not found in broker open orders",
                order_id=spec.order_id,
            )
        current = map_ib_status(trade.orderStatus.status)
        if current == OrderStatus.CANCELLED:
            return OrderAck.now(order_id=spec.order_id, status=current)
        if current.is_terminal:
            raise GatewayError(
                f"Order {spec.order_id} is already {current.value}",
                order_id=spec.order_id,
            )
        previous = trade.orderStatus.status
        try:
            self._ib.cancelOrder(trade.order)
        except ConnectionError as exc:
            raise GatewayRequestError(str(exc), order_id=spec.order_id) from exc
        raw_status = await _wait_for_status_change(
            trade,
            previous=previous,
            timeout=self._status_timeout,
        )
        return OrderAck.now(order_id=spec.order_id, status=map_ib_status(raw_status))

    async def list_orders(self) -> list[OrderSnapshot]:
        self._ensure_connected()
        timeout = max(self._connection.config.timeout, 1.0)
        try:
            open_trades = await asyncio.wait_for(self._ib.reqAllOpenOrdersAsync(), timeout=timeout)
            completed = await asyncio.wait_for(
                self._ib.reqCompletedOrdersAsync(apiOnly=False),
                timeout=timeout,
            )
        except asyncio.TimeoutError as exc:
            raise GatewayRequestError("timed out fetching IBKR orders") from exc
        observed_at = datetime.now(timezone.utc)
        return merge_trade_snapshots(
            [self._ib.trades(), _to_trade_list(open_trades), _to_trade_list(completed)],
            observed_at=observed_at,
        )

    def _ensure_connected(self) -> None:
        if not self._ib.isConnected():
            raise GatewayRequestError("IBKR is not connected")


def map_ib_status(raw: Optional[str]) -> OrderStatus:
    if not raw:
        return OrderStatus.UNKNOWN
    normalized = str(raw).strip().lower().replace(" ", "")
    return _IB_STATUS_MAP.get(normalized, OrderStatus.UNKNOWN)


def merge_trade_snapshots(
    sources: Iterable[Iterable[Trade]],
    *,
    observed_at: Optional[datetime] = None,
) -> list[OrderSnapshot]:
    """
    Flatten several IB trade lists into one snapshot per order id.

    The same order can show up live in ib.trades() and again in the completed
    list; a terminal status wins over a live one, otherwise first seen wins.
    """
    merged: dict[str, OrderSnapshot] = {}
    for trades in sources:
        for trade in trades:
            snapshot = trade_to_snapshot(trade, observed_at=observed_at)
            if snapshot is None:
                continue
            existing = merged.get(snapshot.order_id)
            if existing is None or (snapshot.status.is_terminal and not existing.status.is_terminal):
                merged[snapshot.order_id] = snapshot
    return sorted(merged.values(), key=lambda item: (item.symbol, _sort_key(item.order_id)))


def trade_to_snapshot(trade: Trade, *, observed_at: Optional[datetime] = None) -> Optional[OrderSnapshot]:
    order = getattr(trade, "order", None)
    status = getattr(trade, "orderStatus", None)
    contract = getattr(trade, "contract", None)
    if order is None or status is None:
        return None
    order_id = _maybe_int(getattr(order, "orderId", None))
    if not order_id:
        order_id = _maybe_int(getattr(order, "permId", None))
    if not order_id:
        return None

    symbol = getattr(contract, "symbol", None) or getattr(contract, "localSymbol", None) or ""
    action = _normalize_text(getattr(order, "action", None), upper=True)
    side = OrderSide(action) if action in {"BUY", "SELL"} else None
    order_type = _normalize_text(getattr(order, "orderType", None), upper=True)
    avg_fill_price = _maybe_price(getattr(status, "avgFillPrice", None))

    return OrderSnapshot(
        order_id=str(order_id),
        symbol=str(symbol).upper(),
        side=side,
        kind=_IB_ORDER_TYPES.get(order_type or ""),
        qty=_maybe_float(getattr(order, "totalQuantity", None)),
        status=map_ib_status(getattr(status, "status", None)),
        limit_price=_maybe_price(getattr(order, "lmtPrice", None)),
        stop_price=_maybe_price(getattr(order, "auxPrice", None)),
        filled_qty=_maybe_float(getattr(status, "filled", None)),
        avg_fill_price=avg_fill_price,
        account=_normalize_text(getattr(order, "account", None)),
        client_tag=_normalize_text(getattr(order, "orderRef", None)),
        observed_at=observed_at,
    )


def _build_order(spec: OrderSpec) -> object:
    action = spec.side.value
    if spec.kind == OrderKind.MARKET:
        order = MarketOrder(action, spec.qty, tif=spec.tif)
    elif spec.kind == OrderKind.LIMIT:
        order = LimitOrder(action, spec.qty, spec.limit_price, tif=spec.tif)
    elif spec.kind == OrderKind.STOP:
        order = StopOrder(action, spec.qty, spec.stop_price, tif=spec.tif)
    elif spec.kind == OrderKind.STOP_LIMIT:
        order = StopLimitOrder(action, spec.qty, spec.limit_price, spec.stop_price, tif=spec.tif)
    else:
        raise OrderRejectedError(f"Unsupported order kind: {spec.kind}")

    order.outsideRth = spec.outside_rth
    if spec.account:
        order.account = spec.account
    if spec.client_tag:
        order.orderRef = spec.client_tag
    return order


class _GatewayOrderErrorCapture:
    def __init__(self, connection: IBKRConnection, *, order_id: int) -> None:
        self._order_id = order_id
        self._code: Optional[int] = None
        self._message: Optional[str] = None
        self._unsubscribe = connection.subscribe_gateway_messages(self._handle)

    def _handle(
        self,
        req_id: Optional[int],
        code: Optional[int],
        message: Optional[str],
        advanced: Optional[str],
    ) -> None:
        if req_id != self._order_id:
            return
        if code is not None:
            self._code = int(code)
        if message:
            self._message = message
        elif advanced:
            self._message = advanced

    def snapshot(self) -> tuple[Optional[int], Optional[str]]:
        return self._code, self._message

    def close(self) -> None:
        self._unsubscribe()


async def _wait_for_order_id(
    trade: Trade,
    *,
    timeout: float = 2.0,
    poll_interval: float = 0.05,
) -> Optional[int]:
    if trade.order.orderId:
        return trade.order.orderId
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if trade.order.orderId:
            return trade.order.orderId
        await asyncio.sleep(poll_interval)
    return trade.order.orderId or None


async def _wait_for_order_status(
    trade: Trade,
    *,
    timeout: float = 2.0,
    poll_interval: float = 0.1,
) -> Optional[str]:
    status = trade.orderStatus.status
    deadline = time.monotonic() + timeout
    while not status and time.monotonic() < deadline:
        await asyncio.sleep(poll_interval)
        status = trade.orderStatus.status
    return status or None


async def _wait_for_status_change(
    trade: Trade,
    *,
    previous: Optional[str],
    timeout: float = 2.0,
    poll_interval: float = 0.1,
) -> Optional[str]:
    status = trade.orderStatus.status
    deadline = time.monotonic() + timeout
    while status == previous and time.monotonic() < deadline:
        await asyncio.sleep(poll_interval)
        status = trade.orderStatus.status
    return status or None


def _find_trade_by_order_id(ib: IB, order_id: int) -> Optional[Trade]:
    for trade in ib.trades():
        if getattr(getattr(trade, "order", None), "orderId", None) == order_id:
            return trade
    return None


async def _find_trade_by_order_id_with_refresh(
    ib: IB,
    order_id: int,
    *,
    timeout: float,
) -> Optional[Trade]:
    trade = _find_trade_by_order_id(ib, order_id)
    if trade is not None:
        return trade
    try:
        await asyncio.wait_for(ib.reqAllOpenOrdersAsync(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise GatewayRequestError(
            f"timed out refreshing open orders while looking for {order_id}",
            order_id=str(order_id),
        ) from exc
    return _find_trade_by_order_id(ib, order_id)


def _to_trade_list(value: object) -> list[Trade]:
    if value is None:
        return []
    try:
        return [item for item in value if hasattr(item, "order")]  # type: ignore[union-attr]
    except TypeError:
        return []


def _sort_key(order_id: str) -> tuple[int, str]:
    number = _maybe_int(order_id)
    return (number if number is not None else -1, order_id)


def _normalize_text(value: object, *, upper: bool = False) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    return text.upper() if upper else text


def _maybe_price(value: object) -> Optional[float]:
    price = _maybe_float(value)
    if price is None or not math.isfinite(price) or price >= UNSET_DOUBLE or price <= 0:
        return None
    return price


def _maybe_float(value: object) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(cast(Any, value))
    except (TypeError, ValueError):
        return None


def _maybe_int(value: object) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(cast(Any, value))
    except (TypeError, ValueError):
        return None
