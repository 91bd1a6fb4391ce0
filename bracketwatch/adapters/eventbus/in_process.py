from __future__ import annotations

import asyncio
import inspect
from typing import Awaitable, Callable, TypeVar

from loguru import logger

EventT = TypeVar("EventT")
EventHandler = Callable[[EventT], Awaitable[None] | None]


class InProcessEventBus:
    """
    Fan events out to subscribers by isinstance match.

    Inside a running loop handlers are scheduled with call_soon so a publisher
    never runs subscriber code inline; without a loop they run immediately.
    """

    def __init__(self) -> None:
        self._subscribers: list[tuple[type, EventHandler]] = []
        self._pending: set[asyncio.Task] = set()

    def publish(self, event: object) -> None:
        if not self._subscribers:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        for event_type, handler in list(self._subscribers):
            if not isinstance(event, event_type):
                continue
            if loop and loop.is_running():
                loop.call_soon(self._dispatch, handler, event)
            else:
                self._dispatch(handler, event)

    def subscribe(self, event_type: type[EventT], handler: EventHandler[EventT]) -> Callable[[], None]:
        entry = (event_type, handler)
        self._subscribers.append(entry)

        def _unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return _unsubscribe

    def _dispatch(self, handler: EventHandler, event: object) -> None:
        try:
            result = handler(event)
        except Exception:
            logger.exception(
                "event handler error (event={}, handler={})",
                type(event).__name__,
                _handler_name(handler),
            )
            return

        if inspect.isawaitable(result):
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(_await(result))
                return
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error("event handler task error")


async def _await(awaitable: Awaitable[None]) -> None:
    await awaitable


def _handler_name(handler: EventHandler) -> str:
    name = getattr(handler, "__name__", None)
    if name:
        return name
    return handler.__class__.__name__
