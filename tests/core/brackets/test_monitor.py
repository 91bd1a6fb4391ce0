from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from bracketwatch.core.brackets.events import (
    BracketMonitorStarted,
    BracketMonitorStopped,
    BracketResolved,
    BracketTickFailed,
    BracketTickObserved,
    BracketTransitioned,
)
from bracketwatch.core.brackets.models import (
    Bracket,
    BracketState,
    MonitorConfigError,
    MonitorOptions,
    RetryPolicy,
)
from bracketwatch.core.brackets.monitor import BracketMonitor, start_bracket_monitor
from bracketwatch.core.orders.errors import GatewayRequestError
from bracketwatch.core.orders.models import (
    OrderAck,
    OrderCancelSpec,
    OrderKind,
    OrderSide,
    OrderSnapshot,
    OrderSpec,
    OrderStatus,
)

_OPEN = OrderStatus.OPEN
_FILLED = OrderStatus.FILLED


class _ScriptedOrderPort:
    """Serves one scripted order book per list_orders call; the last one repeats."""

    def __init__(self, books: list, *, cancel_failures: Optional[list[Exception]] = None) -> None:
        self._books = list(books)
        self._cancel_failures = list(cancel_failures or [])
        self.list_calls = 0
        self.cancel_calls: list[str] = []

    async def submit_order(self, spec: OrderSpec) -> OrderAck:
        raise AssertionError("the monitor never submits orders")

    async def list_orders(self) -> list[OrderSnapshot]:
        self.list_calls += 1
        book = self._books.pop(0) if len(self._books) > 1 else self._books[0]
        if isinstance(book, Exception):
            raise book
        if callable(book):
            return await book()
        return list(book)

    async def cancel_order(self, spec: OrderCancelSpec) -> OrderAck:
        self.cancel_calls.append(spec.order_id)
        if self._cancel_failures:
            raise self._cancel_failures.pop(0)
        return OrderAck.now(order_id=spec.order_id, status=OrderStatus.CANCELLED)


class _FakeEventBus:
    def __init__(self) -> None:
        self.events: list[object] = []

    def publish(self, event: object) -> None:
        self.events.append(event)

    def subscribe(self, event_type, handler):
        raise NotImplementedError

    def of_type(self, event_type: type) -> list:
        return [event for event in self.events if isinstance(event, event_type)]


async def _no_sleep(_delay: float) -> None:
    await asyncio.sleep(0)


def _options(**overrides) -> MonitorOptions:
    values = dict(
        interval_seconds=1.0,
        max_ticks=10,
        request_timeout_seconds=0.5,
        cancel_retry=RetryPolicy(attempts=2, backoff_seconds=0.0),
    )
    values.update(overrides)
    return MonitorOptions(**values)


def _bracket(tp_id: str = "101", sl_id: str = "102", **overrides) -> Bracket:
    values = dict(
        protective_order_id=tp_id,
        stop_order_id=sl_id,
        symbol="NIFTY",
        qty=50,
        entry_price=500.0,
        take_profit_price=510.0,
        stop_price=495.0,
    )
    values.update(overrides)
    return Bracket(**values)


def _order(
    order_id: str,
    status: OrderStatus,
    *,
    kind: OrderKind = OrderKind.LIMIT,
    avg_fill_price: Optional[float] = None,
) -> OrderSnapshot:
    return OrderSnapshot(
        order_id=order_id,
        symbol="NIFTY",
        side=OrderSide.SELL,
        kind=kind,
        qty=50,
        status=status,
        avg_fill_price=avg_fill_price,
    )


def _book(tp_status: Optional[OrderStatus], sl_status: Optional[OrderStatus], **fills) -> list[OrderSnapshot]:
    book = []
    if tp_status is not None:
        book.append(_order("101", tp_status, avg_fill_price=fills.get("tp_fill")))
    if sl_status is not None:
        book.append(_order("102", sl_status, kind=OrderKind.STOP, avg_fill_price=fills.get("sl_fill")))
    return book


def test_take_profit_fill_cancels_stop_and_resolves_profit() -> None:
    bracket = _bracket()
    port = _ScriptedOrderPort([_book(_OPEN, _OPEN), _book(_FILLED, _OPEN, tp_fill=510.0)])
    bus = _FakeEventBus()
    monitor = BracketMonitor(bracket, port, _options(), event_bus=bus, sleep=_no_sleep)
    resolved: list[BracketResolved] = []
    monitor.on_resolved(resolved.append)

    asyncio.run(monitor.tick())
    assert bracket.state == BracketState.ACTIVE
    assert port.cancel_calls == []

    asyncio.run(monitor.tick())

    assert bracket.state == BracketState.RESOLVED_PROFIT
    assert port.cancel_calls == ["102"]
    assert len(resolved) == 1
    assert resolved[0].state == BracketState.RESOLVED_PROFIT
    assert resolved[0].cancelled_order_id == "102"
    assert resolved[0].estimated_pnl == 500.0
    assert not resolved[0].cancellation_failed
    transitions = [(event.from_state, event.to_state) for event in bus.of_type(BracketTransitioned)]
    assert transitions == [
        (BracketState.ACTIVE, BracketState.RESOLVING),
        (BracketState.RESOLVING, BracketState.RESOLVED_PROFIT),
    ]


def test_losing_side_cancel_failing_twice_still_resolves_loss() -> None:
    bracket = _bracket()
    port = _ScriptedOrderPort(
        [_book(_OPEN, _FILLED, sl_fill=495.0)],
        cancel_failures=[GatewayRequestError("timeout"), GatewayRequestError("timeout")],
    )
    monitor = BracketMonitor(bracket, port, _options(), sleep=_no_sleep)
    resolved: list[BracketResolved] = []
    monitor.on_resolved(resolved.append)

    asyncio.run(monitor.tick())

    assert bracket.state == BracketState.RESOLVED_LOSS
    assert bracket.cancellation_failed
    assert port.cancel_calls == ["101", "101"]
    assert len(resolved) == 1
    assert resolved[0].cancellation_failed
    assert "timeout" in (resolved[0].cancellation_error or "")
    assert resolved[0].cancelled_order_id is None
    assert resolved[0].estimated_pnl == -250.0


def test_both_filled_resolves_unknown_without_cancels() -> None:
    bracket = _bracket()
    port = _ScriptedOrderPort([_book(_FILLED, _FILLED)])
    monitor = BracketMonitor(bracket, port, _options(), sleep=_no_sleep)

    asyncio.run(monitor.tick())

    assert bracket.state == BracketState.RESOLVED_UNKNOWN
    assert bracket.reason == "both_filled"
    assert port.cancel_calls == []
    assert not bracket.cancellation_attempted


def test_missing_orders_keep_bracket_active() -> None:
    bracket = _bracket()
    port = _ScriptedOrderPort([[], _book(None, _OPEN), _book(OrderStatus.CANCELLED, None)])
    monitor = BracketMonitor(bracket, port, _options(), sleep=_no_sleep)

    for _ in range(3):
        asyncio.run(monitor.tick())

    assert bracket.state == BracketState.ACTIVE
    assert port.cancel_calls == []


def test_fetch_failure_leaves_state_untouched() -> None:
    bracket = _bracket()
    port = _ScriptedOrderPort(
        [
            _book(_OPEN, _OPEN),
            GatewayRequestError("gateway unreachable"),
            _book(_FILLED, _OPEN),
        ]
    )
    bus = _FakeEventBus()
    monitor = BracketMonitor(bracket, port, _options(), event_bus=bus, sleep=_no_sleep)

    asyncio.run(monitor.tick())
    before = (bracket.state, bracket.reason, bracket.cancellation_attempted)
    asyncio.run(monitor.tick())
    after = (bracket.state, bracket.reason, bracket.cancellation_attempted)

    assert before == after
    failures = bus.of_type(BracketTickFailed)
    assert len(failures) == 1
    assert failures[0].tick == 2
    assert failures[0].error_type == "GatewayRequestError"

    asyncio.run(monitor.tick())
    assert bracket.state == BracketState.RESOLVED_PROFIT


def test_fetch_timeout_counts_as_failed_tick() -> None:
    async def _hang() -> list[OrderSnapshot]:
        await asyncio.sleep(5)
        return []

    bracket = _bracket()
    port = _ScriptedOrderPort([_hang])
    bus = _FakeEventBus()
    monitor = BracketMonitor(
        bracket,
        port,
        _options(request_timeout_seconds=0.01),
        event_bus=bus,
        sleep=_no_sleep,
    )

    asyncio.run(monitor.tick())

    assert bracket.state == BracketState.ACTIVE
    assert len(bus.of_type(BracketTickFailed)) == 1


def test_one_fetch_per_tick_for_many_brackets() -> None:
    brackets = [_bracket("1", "2"), _bracket("3", "4"), _bracket("5", "6")]
    port = _ScriptedOrderPort([[]])
    bus = _FakeEventBus()
    monitor = BracketMonitor(brackets, port, _options(), event_bus=bus, sleep=_no_sleep)

    asyncio.run(monitor.tick())

    assert port.list_calls == 1
    assert len(bus.of_type(BracketTickObserved)) == 3


def test_resolved_bracket_is_never_mutated_again() -> None:
    first = _bracket("1", "2")
    second = _bracket("3", "4")
    port = _ScriptedOrderPort(
        [
            [_order("1", _FILLED), _order("2", _OPEN)],
            [_order("1", _FILLED), _order("2", _FILLED), _order("3", _OPEN), _order("4", _OPEN)],
            [_order("1", OrderStatus.CANCELLED), _order("2", _FILLED), _order("3", _OPEN), _order("4", _FILLED)],
        ]
    )
    monitor = BracketMonitor([first, second], port, _options(), sleep=_no_sleep)
    resolved: list[BracketResolved] = []
    monitor.on_resolved(resolved.append)

    asyncio.run(monitor.tick())
    snapshot = (first.state, first.reason, first.resolved_at, first.cancellation_attempted)
    asyncio.run(monitor.tick())
    asyncio.run(monitor.tick())

    assert (first.state, first.reason, first.resolved_at, first.cancellation_attempted) == snapshot
    assert second.state == BracketState.RESOLVED_LOSS
    assert port.cancel_calls == ["2", "3"]
    assert [item.bracket_id for item in resolved] == [first.bracket_id, second.bracket_id]


def test_expires_after_max_ticks_and_reports_once() -> None:
    bracket = _bracket()
    port = _ScriptedOrderPort([_book(_OPEN, _OPEN)])
    bus = _FakeEventBus()
    resolved: list[BracketResolved] = []

    async def _run() -> None:
        handle = start_bracket_monitor(
            bracket,
            port,
            _options(max_ticks=3),
            event_bus=bus,
            on_resolved=resolved.append,
            sleep=_no_sleep,
        )
        await handle.wait()
        assert not handle.running

    asyncio.run(_run())

    assert bracket.state == BracketState.EXPIRED
    assert port.list_calls == 3
    assert port.cancel_calls == []
    assert len(resolved) == 1
    assert resolved[0].state == BracketState.EXPIRED
    assert resolved[0].estimated_pnl is None
    stopped = bus.of_type(BracketMonitorStopped)
    assert len(stopped) == 1
    assert stopped[0].reason == "completed"
    assert stopped[0].unresolved_bracket_ids == []
    assert len(bus.of_type(BracketMonitorStarted)) == 1


def test_expiry_applies_even_when_last_fetch_fails() -> None:
    bracket = _bracket()
    port = _ScriptedOrderPort([_book(_OPEN, _OPEN), GatewayRequestError("down")])
    monitor = BracketMonitor(bracket, port, _options(max_ticks=2), sleep=_no_sleep)

    asyncio.run(monitor.run())

    assert bracket.state == BracketState.EXPIRED
    assert monitor.tick_count == 2


def test_fill_on_last_tick_wins_over_expiry() -> None:
    bracket = _bracket()
    port = _ScriptedOrderPort([_book(_OPEN, _OPEN), _book(_FILLED, _OPEN)])
    monitor = BracketMonitor(bracket, port, _options(max_ticks=2), sleep=_no_sleep)

    asyncio.run(monitor.run())

    assert bracket.state == BracketState.RESOLVED_PROFIT
    assert port.cancel_calls == ["102"]


def test_run_finishes_once_every_bracket_resolved() -> None:
    bracket = _bracket()
    port = _ScriptedOrderPort([_book(_OPEN, _OPEN), _book(_OPEN, _FILLED)])
    monitor = BracketMonitor(bracket, port, _options(max_ticks=100), sleep=_no_sleep)

    asyncio.run(monitor.run())

    assert bracket.state == BracketState.RESOLVED_LOSS
    assert port.list_calls == 2
    assert not monitor.running


def test_stop_halts_polling_without_touching_orders() -> None:
    bracket = _bracket()
    port = _ScriptedOrderPort([_book(_OPEN, _OPEN)])
    bus = _FakeEventBus()

    async def _run() -> None:
        handle = start_bracket_monitor(bracket, port, _options(interval_seconds=60.0), event_bus=bus)
        while port.list_calls < 1 or handle.monitor.in_tick:
            await asyncio.sleep(0)
        handle.stop()
        await handle.wait()
        assert not handle.running

    asyncio.run(_run())

    assert bracket.state == BracketState.ACTIVE
    assert port.list_calls == 1
    assert port.cancel_calls == []
    stopped = bus.of_type(BracketMonitorStopped)
    assert len(stopped) == 1
    assert stopped[0].reason == "stopped"
    assert stopped[0].unresolved_bracket_ids == [bracket.bracket_id]


def test_stop_during_fetch_leaves_orders_untouched() -> None:
    bracket = _bracket()
    bus = _FakeEventBus()
    fetching: list[bool] = []

    async def _run() -> _ScriptedOrderPort:
        release = asyncio.Event()

        async def _fill_after_release() -> list[OrderSnapshot]:
            fetching.append(True)
            await release.wait()
            return _book(_FILLED, _OPEN, tp_fill=510.0)

        port = _ScriptedOrderPort([_fill_after_release])
        handle = start_bracket_monitor(
            bracket,
            port,
            _options(request_timeout_seconds=30.0),
            event_bus=bus,
        )
        while not fetching:
            await asyncio.sleep(0)
        handle.stop()
        release.set()
        await handle.wait()
        assert not handle.running
        return port

    port = asyncio.run(_run())

    assert port.cancel_calls == []
    assert bracket.state == BracketState.ACTIVE
    assert bus.of_type(BracketResolved) == []
    stopped = bus.of_type(BracketMonitorStopped)
    assert len(stopped) == 1
    assert stopped[0].reason == "stopped"
    assert stopped[0].unresolved_bracket_ids == [bracket.bracket_id]


def test_stop_requested_while_fetching_skips_evaluation_and_expiry() -> None:
    bracket = _bracket()
    monitors: list[BracketMonitor] = []

    async def _stop_then_fill() -> list[OrderSnapshot]:
        monitors[0].request_stop()
        return _book(_FILLED, _OPEN)

    port = _ScriptedOrderPort([_stop_then_fill])
    monitor = BracketMonitor(bracket, port, _options(max_ticks=1), sleep=_no_sleep)
    monitors.append(monitor)

    asyncio.run(monitor.tick())

    assert port.cancel_calls == []
    assert bracket.state == BracketState.ACTIVE


def test_stop_during_sibling_cancel_lets_the_cancel_finish() -> None:
    bracket = _bracket()

    class _SlowCancelPort(_ScriptedOrderPort):
        def __init__(self, books: list, release: asyncio.Event) -> None:
            super().__init__(books)
            self._release = release

        async def cancel_order(self, spec: OrderCancelSpec) -> OrderAck:
            self.cancel_calls.append(spec.order_id)
            await self._release.wait()
            return OrderAck.now(order_id=spec.order_id, status=OrderStatus.CANCELLED)

    async def _run() -> _SlowCancelPort:
        release = asyncio.Event()
        port = _SlowCancelPort([_book(_FILLED, _OPEN, tp_fill=510.0)], release)
        handle = start_bracket_monitor(bracket, port, _options())
        while not handle.monitor.in_cancel:
            await asyncio.sleep(0)
        handle.stop()
        release.set()
        await handle.wait()
        return port

    port = asyncio.run(_run())

    assert port.cancel_calls == ["102"]
    assert bracket.state == BracketState.RESOLVED_PROFIT


def test_stop_before_task_starts_still_reports_stopped() -> None:
    bracket = _bracket()
    port = _ScriptedOrderPort([_book(_OPEN, _OPEN)])
    bus = _FakeEventBus()

    async def _run() -> None:
        handle = start_bracket_monitor(bracket, port, _options(), event_bus=bus)
        handle.stop()
        await handle.wait()
        assert not handle.running

    asyncio.run(_run())

    assert port.list_calls == 0
    stopped = bus.of_type(BracketMonitorStopped)
    assert len(stopped) == 1
    assert stopped[0].reason == "stopped"
    assert stopped[0].ticks == 0
    assert stopped[0].unresolved_bracket_ids == [bracket.bracket_id]


def test_late_on_resolved_callback_receives_recorded_resolution() -> None:
    bracket = _bracket()
    port = _ScriptedOrderPort([_book(_FILLED, OrderStatus.CANCELLED)])
    monitor = BracketMonitor(bracket, port, _options(), sleep=_no_sleep)

    asyncio.run(monitor.tick())
    late: list[BracketResolved] = []
    monitor.on_resolved(late.append)

    assert len(late) == 1
    assert late[0].state == BracketState.RESOLVED_PROFIT
    assert late[0].reason == "take_profit_filled_stop_inactive"
    assert port.cancel_calls == []


def test_failing_callback_does_not_break_the_tick() -> None:
    bracket = _bracket()
    port = _ScriptedOrderPort([_book(_FILLED, _OPEN)])
    monitor = BracketMonitor(bracket, port, _options(), sleep=_no_sleep)
    seen: list[BracketResolved] = []

    def _explode(_resolution: BracketResolved) -> None:
        raise RuntimeError("callback bug")

    monitor.on_resolved(_explode)
    monitor.on_resolved(seen.append)

    asyncio.run(monitor.tick())

    assert bracket.state == BracketState.RESOLVED_PROFIT
    assert len(seen) == 1


def test_construction_rejects_bad_bracket_sets() -> None:
    port = _ScriptedOrderPort([[]])
    with pytest.raises(MonitorConfigError, match="at least one bracket"):
        BracketMonitor([], port, _options())
    with pytest.raises(MonitorConfigError, match="more than one bracket"):
        BracketMonitor([_bracket("1", "2"), _bracket("2", "3")], port, _options())
    resolved = _bracket()
    resolved.state = BracketState.EXPIRED
    with pytest.raises(MonitorConfigError, match="not ACTIVE"):
        BracketMonitor(resolved, port, _options())
    duplicate = _bracket("7", "8")
    with pytest.raises(MonitorConfigError, match="duplicate bracket id"):
        BracketMonitor([duplicate, duplicate], port, _options())
