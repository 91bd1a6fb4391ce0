from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from bracketwatch.core.orders.errors import OrderRejectedError
from bracketwatch.core.orders.models import (
    OrderAck,
    OrderCancelSpec,
    OrderKind,
    OrderSide,
    OrderSnapshot,
    OrderSpec,
    OrderStatus,
)
from bracketwatch.core.orders.service import OrderService
from bracketwatch.core.positions.models import PositionSnapshot
from bracketwatch.core.positions.risk import (
    PositionSizingError,
    closing_order,
    emergency_close,
    size_position,
)
from bracketwatch.core.positions.service import PositionsService


class _FakeOrderPort:
    def __init__(self, orders: list[OrderSnapshot], reject_symbols: set[str]) -> None:
        self._orders = orders
        self._reject_symbols = reject_symbols
        self.calls: list[str] = []
        self._next_id = 40

    async def submit_order(self, spec: OrderSpec) -> OrderAck:
        self.calls.append(f"submit {spec.symbol}")
        if spec.symbol in self._reject_symbols:
            raise OrderRejectedError(f"no liquidity for {spec.symbol}")
        self._next_id += 1
        return OrderAck.now(order_id=str(self._next_id), status=OrderStatus.PENDING)

    async def cancel_order(self, spec: OrderCancelSpec) -> OrderAck:
        self.calls.append(f"cancel {spec.order_id}")
        return OrderAck.now(order_id=spec.order_id, status=OrderStatus.CANCELLED)

    async def list_orders(self) -> list[OrderSnapshot]:
        return list(self._orders)


class _FakePositionsPort:
    def __init__(self, positions: list[PositionSnapshot]) -> None:
        self._positions = positions

    async def list_positions(self, account: Optional[str] = None) -> list[PositionSnapshot]:
        return list(self._positions)


def test_size_position_long() -> None:
    size = size_position(100_000, 1, 500.0, 495.0)

    assert size.shares == 200
    assert size.position_value == 100_000.0
    assert size.risk_amount == 1_000.0
    assert size.risk_per_share == 5.0


def test_size_position_short_rounds_down() -> None:
    size = size_position(50_000, 0.5, 200.0, 203.0, entry_side=OrderSide.SELL)

    assert size.shares == 83
    assert size.risk_amount == 250.0


@pytest.mark.parametrize(
    "args,kwargs,message",
    [
        ((0, 1, 100.0, 99.0), {}, "account size"),
        ((1000, 0, 100.0, 99.0), {}, "risk percent"),
        ((1000, 1, 100.0, 100.0), {}, "below entry"),
        ((1000, 1, 100.0, 99.0), {"entry_side": OrderSide.SELL}, "above entry"),
    ],
)
def test_size_position_validation(args: tuple, kwargs: dict, message: str) -> None:
    with pytest.raises(PositionSizingError, match=message):
        size_position(*args, **kwargs)


def test_closing_order_takes_opposite_side() -> None:
    long_exit = closing_order(PositionSnapshot(symbol="AAPL", net_qty=10, account="DU1"))
    short_stop = closing_order(
        PositionSnapshot(symbol="TSLA", net_qty=-5),
        kind=OrderKind.STOP,
        stop_price=260.0,
    )

    assert (long_exit.side, long_exit.qty, long_exit.kind, long_exit.account) == (
        OrderSide.SELL,
        10,
        OrderKind.MARKET,
        "DU1",
    )
    assert (short_stop.side, short_stop.qty, short_stop.stop_price) == (OrderSide.BUY, 5, 260.0)


def test_emergency_close_cancels_before_closing_and_collects_failures() -> None:
    pending = OrderSnapshot(
        order_id="7",
        symbol="AAPL",
        side=OrderSide.SELL,
        kind=OrderKind.STOP,
        qty=10,
        status=OrderStatus.OPEN,
        stop_price=190.0,
    )
    port = _FakeOrderPort([pending], reject_symbols={"TSLA"})
    positions = _FakePositionsPort(
        [
            PositionSnapshot(symbol="AAPL", net_qty=10),
            PositionSnapshot(symbol="TSLA", net_qty=-5),
        ]
    )

    report = asyncio.run(emergency_close(OrderService(port), PositionsService(positions), account="DU1"))

    assert port.calls == ["cancel 7", "submit AAPL", "submit TSLA"]
    assert report.cancel_report.cancelled == ["7"]
    assert report.closed == {"AAPL": "41"}
    assert "no liquidity" in report.failed["TSLA"]
