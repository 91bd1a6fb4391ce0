from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from loguru import logger

from bracketwatch.core.brackets.models import Bracket, RetryPolicy
from bracketwatch.core.orders.errors import GatewayError
from bracketwatch.core.orders.models import OrderAck, OrderCancelSpec

CancelFn = Callable[[OrderCancelSpec], Awaitable[OrderAck]]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class CancelOutcome:
    order_id: str
    attempts: int
    succeeded: bool
    error: Optional[str] = None
    skipped: bool = False


class CancellationGuard:
    """
    Issues at most one cancel sequence per bracket.

    The bracket's cancellation_attempted flag is set before the first gateway
    call, so a second resolution path (or a re-entrant tick) sees it and backs
    off without calling the gateway again.
    """

    def __init__(
        self,
        bracket: Bracket,
        cancel: CancelFn,
        *,
        policy: RetryPolicy,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._bracket = bracket
        self._cancel = cancel
        self._policy = policy
        self._sleep = sleep

    async def cancel(self, order_id: str) -> CancelOutcome:
        if self._bracket.cancellation_attempted:
            logger.debug(
                "bracket {} already attempted cancellation; skipping order {}",
                self._bracket.bracket_id,
                order_id,
            )
            return CancelOutcome(order_id=order_id, attempts=0, succeeded=False, skipped=True)
        self._bracket.cancellation_attempted = True

        last_error: Optional[str] = None
        attempts = 0
        for attempt in range(1, self._policy.attempts + 1):
            attempts = attempt
            try:
                await self._cancel(OrderCancelSpec(order_id=order_id))
            except Exception as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "cancel attempt {}/{} for order {} (bracket {}) failed: {}",
                    attempt,
                    self._policy.attempts,
                    order_id,
                    self._bracket.bracket_id,
                    last_error,
                )
                if isinstance(exc, GatewayError) and not exc.retryable:
                    break
                if attempt < self._policy.attempts and self._policy.backoff_seconds > 0:
                    await self._sleep(self._policy.backoff_seconds)
                continue
            return CancelOutcome(order_id=order_id, attempts=attempt, succeeded=True)

        self._bracket.cancellation_error = last_error
        return CancelOutcome(order_id=order_id, attempts=attempts, succeeded=False, error=last_error)
