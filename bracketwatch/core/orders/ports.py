from __future__ import annotations

from typing import Awaitable, Callable, Protocol, TypeVar

from bracketwatch.core.orders.models import OrderAck, OrderCancelSpec, OrderSnapshot, OrderSpec

EventT = TypeVar("EventT")
EventHandler = Callable[[EventT], Awaitable[None] | None]


class OrderPort(Protocol):
    async def submit_order(self, spec: OrderSpec) -> OrderAck:
        """
        Submit an order to the broker and return an acknowledgement.

        Raises OrderRejectedError when the venue refuses the order and
        GatewayRequestError when the request itself failed.
        """
        raise NotImplementedError

    async def cancel_order(self, spec: OrderCancelSpec) -> OrderAck:
        """Cancel an order at the broker and return an acknowledgement."""
        raise NotImplementedError

    async def list_orders(self) -> list[OrderSnapshot]:
        """Return the broker order book; purged historical entries may be missing."""
        raise NotImplementedError


class EventBus(Protocol):
    def publish(self, event: object) -> None:
        """Publish an event to subscribers."""
        raise NotImplementedError

    def subscribe(self, event_type: type[EventT], handler: EventHandler[EventT]) -> Callable[[], None]:
        """Subscribe a handler to events of a given type."""
        raise NotImplementedError
