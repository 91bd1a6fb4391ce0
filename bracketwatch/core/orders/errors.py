from __future__ import annotations

from typing import Optional


class GatewayError(RuntimeError):
    """Base class for failures reported by an order gateway."""

    retryable = False

    def __init__(self, message: str, *, order_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.order_id = order_id


class GatewayRequestError(GatewayError):
    """The request never got a venue decision (network, auth, timeout)."""

    retryable = True


class OrderRejectedError(GatewayError):
    """The venue received the order and refused it."""
