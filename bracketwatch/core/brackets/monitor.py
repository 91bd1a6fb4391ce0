from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from typing import Optional, Union

from loguru import logger

from bracketwatch.core.brackets.events import (
    BracketMonitorStarted,
    BracketMonitorStopped,
    BracketResolved,
    BracketTickFailed,
    BracketTickObserved,
    BracketTransitioned,
)
from bracketwatch.core.brackets.guard import CancellationGuard, SleepFn
from bracketwatch.core.brackets.models import (
    Bracket,
    BracketState,
    MonitorConfigError,
    MonitorOptions,
)
from bracketwatch.core.brackets.policy import BracketAction, estimate_outcome, resolve
from bracketwatch.core.orders.models import OrderSnapshot
from bracketwatch.core.orders.ports import EventBus, OrderPort

ResolvedCallback = Callable[[BracketResolved], None]
BracketInput = Union[Bracket, Sequence[Bracket]]


class BracketMonitor:
    """
    One monitor session: a set of brackets polled against a single order book
    fetch per tick.

    Bracket state changes only inside tick(). A failed or timed-out fetch
    leaves every bracket as it was; the next natural tick is the retry.
    """

    def __init__(
        self,
        brackets: BracketInput,
        order_port: OrderPort,
        options: Optional[MonitorOptions] = None,
        *,
        event_bus: Optional[EventBus] = None,
        session_id: Optional[str] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        items = [brackets] if isinstance(brackets, Bracket) else list(brackets)
        _validate_brackets(items)
        self._options = options or MonitorOptions()
        self._order_port = order_port
        self._event_bus = event_bus
        self._session_id = session_id or uuid.uuid4().hex[:8]
        self._sleep = sleep
        self._brackets = items
        self._active: dict[str, Bracket] = {bracket.bracket_id: bracket for bracket in items}
        self._guards = {
            bracket.bracket_id: CancellationGuard(
                bracket,
                order_port.cancel_order,
                policy=self._options.cancel_retry,
                sleep=sleep,
            )
            for bracket in items
        }
        self._resolutions: dict[str, BracketResolved] = {}
        self._callbacks: list[ResolvedCallback] = []
        self._tick_count = 0
        self._running = False
        self._stop_requested = False
        self._in_tick = False
        self._in_cancel = False

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def options(self) -> MonitorOptions:
        return self._options

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def brackets(self) -> list[Bracket]:
        return list(self._brackets)

    @property
    def active_brackets(self) -> list[Bracket]:
        return list(self._active.values())

    @property
    def resolutions(self) -> list[BracketResolved]:
        return list(self._resolutions.values())

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_tick(self) -> bool:
        return self._in_tick

    @property
    def in_cancel(self) -> bool:
        return self._in_cancel

    def on_resolved(self, callback: ResolvedCallback) -> None:
        self._callbacks.append(callback)
        for resolution in list(self._resolutions.values()):
            self._notify(callback, resolution)

    def request_stop(self) -> None:
        self._stop_requested = True

    async def run(self) -> None:
        if self._running:
            raise RuntimeError(f"bracket monitor {self._session_id} is already running")
        self._running = True
        self._publish(
            BracketMonitorStarted.now(
                session_id=self._session_id,
                bracket_ids=list(self._active),
                interval_seconds=self._options.interval_seconds,
                max_ticks=self._options.max_ticks,
            )
        )
        logger.info(
            "bracket monitor {} started: {} bracket(s), every {}s for up to {} ticks",
            self._session_id,
            len(self._active),
            self._options.interval_seconds,
            self._options.max_ticks,
        )
        reason = "stopped"
        try:
            while not self._stop_requested:
                await self.tick()
                if not self._active:
                    reason = "completed"
                    break
                if self._stop_requested:
                    break
                await self._sleep(self._options.interval_seconds)
        finally:
            self._running = False
            unresolved = list(self._active)
            if unresolved:
                logger.info(
                    "bracket monitor {} stopped with {} bracket(s) unwatched; their orders are untouched",
                    self._session_id,
                    len(unresolved),
                )
            self._publish(
                BracketMonitorStopped.now(
                    session_id=self._session_id,
                    reason=reason,
                    ticks=self._tick_count,
                    unresolved_bracket_ids=unresolved,
                )
            )

    async def tick(self) -> None:
        if not self._active:
            return
        self._in_tick = True
        try:
            self._tick_count += 1
            tick = self._tick_count
            orders = await self._fetch_orders(tick)
            if self._stop_requested:
                return
            if orders is not None:
                by_id = {order.order_id: order for order in orders}
                for bracket in list(self._active.values()):
                    if self._stop_requested:
                        return
                    await self._evaluate(bracket, by_id, tick)
            if tick >= self._options.max_ticks:
                for bracket in list(self._active.values()):
                    self._expire(bracket, tick)
        finally:
            self._in_tick = False

    async def _fetch_orders(self, tick: int) -> Optional[list[OrderSnapshot]]:
        try:
            return await asyncio.wait_for(
                self._order_port.list_orders(),
                timeout=self._options.request_timeout_seconds,
            )
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.warning(
                "bracket monitor {} tick {}/{}: order fetch failed ({}); retrying next tick",
                self._session_id,
                tick,
                self._options.max_ticks,
                message,
            )
            self._publish(
                BracketTickFailed.now(
                    session_id=self._session_id,
                    tick=tick,
                    error_type=type(exc).__name__,
                    message=message,
                )
            )
            return None

    async def _evaluate(self, bracket: Bracket, by_id: dict[str, OrderSnapshot], tick: int) -> None:
        protective = by_id.get(bracket.protective_order_id)
        stop = by_id.get(bracket.stop_order_id)
        protective_status = protective.status if protective else None
        stop_status = stop.status if stop else None
        self._publish(
            BracketTickObserved.now(
                session_id=self._session_id,
                tick=tick,
                max_ticks=self._options.max_ticks,
                bracket_id=bracket.bracket_id,
                symbol=bracket.symbol,
                protective_status=protective_status,
                stop_status=stop_status,
            )
        )

        decision = resolve(bracket.state, protective_status, stop_status)
        if decision.state == BracketState.ACTIVE:
            return

        cancelled_order_id: Optional[str] = None
        if decision.action.issues_cancel:
            self._transition(bracket, BracketState.RESOLVING, decision.reason, tick)
            target = (
                bracket.stop_order_id
                if decision.action == BracketAction.CANCEL_STOP
                else bracket.protective_order_id
            )
            self._in_cancel = True
            try:
                outcome = await self._guards[bracket.bracket_id].cancel(target)
            finally:
                self._in_cancel = False
            if outcome.succeeded:
                cancelled_order_id = target
        elif decision.action == BracketAction.FLAG_BOTH_FILLED:
            logger.warning(
                "bracket {} {}: take-profit {} and stop {} both report filled; "
                "fill order cannot be recovered from polling, check the position manually",
                bracket.bracket_id,
                bracket.symbol,
                bracket.protective_order_id,
                bracket.stop_order_id,
            )

        exit_fill = None
        if decision.state == BracketState.RESOLVED_PROFIT:
            exit_fill = protective
        elif decision.state == BracketState.RESOLVED_LOSS:
            exit_fill = stop
        self._finish(
            bracket,
            decision.state,
            decision.reason,
            tick,
            exit_fill_price=exit_fill.avg_fill_price if exit_fill else None,
            cancelled_order_id=cancelled_order_id,
        )

    def _expire(self, bracket: Bracket, tick: int) -> None:
        logger.info(
            "bracket {} {} expired after {} ticks; orders {} and {} remain live",
            bracket.bracket_id,
            bracket.symbol,
            tick,
            bracket.protective_order_id,
            bracket.stop_order_id,
        )
        self._finish(bracket, BracketState.EXPIRED, "session_expired", tick)

    def _finish(
        self,
        bracket: Bracket,
        state: BracketState,
        reason: str,
        tick: int,
        *,
        exit_fill_price: Optional[float] = None,
        cancelled_order_id: Optional[str] = None,
    ) -> None:
        estimated_pnl = estimate_outcome(bracket, state, exit_fill_price=exit_fill_price)
        self._transition(bracket, state, reason, tick, estimated_pnl=estimated_pnl)
        bracket.resolved_at = datetime.now(timezone.utc)
        self._active.pop(bracket.bracket_id, None)
        if bracket.cancellation_failed:
            logger.warning(
                "bracket {} {} resolved {} but the sibling cancel failed ({}); the order may still be live",
                bracket.bracket_id,
                bracket.symbol,
                state.value,
                bracket.cancellation_error,
            )
        resolution = BracketResolved.now(
            bracket_id=bracket.bracket_id,
            symbol=bracket.symbol,
            state=state,
            reason=reason,
            tick=tick,
            cancelled_order_id=cancelled_order_id,
            cancellation_failed=bracket.cancellation_failed,
            cancellation_error=bracket.cancellation_error,
            estimated_pnl=estimated_pnl,
        )
        self._resolutions[bracket.bracket_id] = resolution
        self._publish(resolution)
        for callback in list(self._callbacks):
            self._notify(callback, resolution)

    def _transition(
        self,
        bracket: Bracket,
        state: BracketState,
        reason: str,
        tick: int,
        *,
        estimated_pnl: Optional[float] = None,
    ) -> None:
        previous = bracket.state
        bracket.state = state
        bracket.reason = reason
        logger.info(
            "bracket {} {}: {} -> {} ({}) tick={} pnl={}",
            bracket.bracket_id,
            bracket.symbol,
            previous.value,
            state.value,
            reason,
            tick,
            estimated_pnl,
        )
        self._publish(
            BracketTransitioned.now(
                bracket_id=bracket.bracket_id,
                symbol=bracket.symbol,
                from_state=previous,
                to_state=state,
                reason=reason,
                tick=tick,
                estimated_pnl=estimated_pnl,
            )
        )

    def _notify(self, callback: ResolvedCallback, resolution: BracketResolved) -> None:
        try:
            callback(resolution)
        except Exception:
            logger.exception(
                "on_resolved callback failed for bracket {} ({})",
                resolution.bracket_id,
                resolution.state.value,
            )

    def _publish(self, event: object) -> None:
        if self._event_bus:
            self._event_bus.publish(event)


class MonitorHandle:
    def __init__(self, monitor: BracketMonitor, task: "asyncio.Task[None]") -> None:
        self._monitor = monitor
        self._task = task

    @property
    def monitor(self) -> BracketMonitor:
        return self._monitor

    @property
    def session_id(self) -> str:
        return self._monitor.session_id

    @property
    def running(self) -> bool:
        return not self._task.done()

    @property
    def brackets(self) -> list[Bracket]:
        return self._monitor.brackets

    def stop(self) -> None:
        """
        Stop polling. Orders at the broker are never touched.

        A pending fetch or sleep is cancelled at once. A sibling cancel that is
        already in flight completes so its bracket does not stay RESOLVING. A
        task that has not started yet runs just far enough to report the stop.
        """
        self._monitor.request_stop()
        if self._task.done() or not self._monitor.running or self._monitor.in_cancel:
            return
        self._task.cancel()

    def on_resolved(self, callback: ResolvedCallback) -> None:
        self._monitor.on_resolved(callback)

    async def wait(self) -> None:
        await asyncio.wait({self._task})
        if self._task.cancelled():
            return
        exc = self._task.exception()
        if exc is not None:
            raise exc


def start_bracket_monitor(
    brackets: BracketInput,
    order_port: OrderPort,
    options: Optional[MonitorOptions] = None,
    *,
    event_bus: Optional[EventBus] = None,
    on_resolved: Optional[ResolvedCallback] = None,
    sleep: SleepFn = asyncio.sleep,
) -> MonitorHandle:
    monitor = BracketMonitor(
        brackets,
        order_port,
        options,
        event_bus=event_bus,
        sleep=sleep,
    )
    if on_resolved is not None:
        monitor.on_resolved(on_resolved)
    task = asyncio.create_task(monitor.run(), name=f"bracket-monitor-{monitor.session_id}")
    task.add_done_callback(_log_task_failure)
    return MonitorHandle(monitor, task)


def _log_task_failure(task: "asyncio.Task[None]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.opt(exception=exc).error("bracket monitor task {} crashed", task.get_name())


def _validate_brackets(brackets: list[Bracket]) -> None:
    if not brackets:
        raise MonitorConfigError("at least one bracket is required")
    bracket_ids: set[str] = set()
    order_ids: set[str] = set()
    for bracket in brackets:
        if not isinstance(bracket, Bracket):
            raise MonitorConfigError(f"expected Bracket, got {type(bracket).__name__}")
        if bracket.state != BracketState.ACTIVE:
            raise MonitorConfigError(f"bracket {bracket.bracket_id} is {bracket.state.value}, not ACTIVE")
        if bracket.bracket_id in bracket_ids:
            raise MonitorConfigError(f"duplicate bracket id {bracket.bracket_id}")
        bracket_ids.add(bracket.bracket_id)
        for order_id in bracket.order_ids:
            if order_id in order_ids:
                raise MonitorConfigError(f"order {order_id} belongs to more than one bracket")
            order_ids.add(order_id)
