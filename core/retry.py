"""
Quota-gated retry for every paid external call.

RetryPolicy — max attempts, exponential backoff (1s, 2s, 4s, ...) and a
retryable-error predicate, executed with tenacity.

QuotaGuard — wraps one external call:
  1. pre-flight affordability check against the ledger (estimate)
  2. call through the retry policy
  3. debit the ledger with the actual cost on success
Any failure along the way returns the caller-supplied fallback, so a turn
never stalls on an exhausted budget or an unavailable service.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt,
    wait_exponential,
)

from core.errors import QuotaExceeded, is_transient
from core.quota import QuotaLedger

logger = structlog.get_logger()

T = TypeVar("T")


class RetryPolicy:
    """
    Usage:
        policy = RetryPolicy(max_attempts=3)
        text = await policy.run(client.generate, prompt)
    """

    def __init__(
        self,
        max_attempts: int = 3,
        initial_backoff_s: float = 1.0,
        max_backoff_s: float = 4.0,
        retryable: Callable[[BaseException], bool] = is_transient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.initial_backoff_s = initial_backoff_s
        self.max_backoff_s = max_backoff_s
        self.retryable = retryable
        self._sleep = sleep

    def backoff_schedule(self) -> list[float]:
        """Waits between attempts, e.g. [1.0, 2.0] for three attempts."""
        return [
            min(self.max_backoff_s, self.initial_backoff_s * (2 ** i))
            for i in range(self.max_attempts - 1)
        ]

    def _retrying(self, label: str) -> AsyncRetrying:
        def log_retry(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            logger.warning("external_call_retry",
                           call=label,
                           attempt=state.attempt_number,
                           wait_s=state.next_action.sleep if state.next_action else 0,
                           error=str(exc))

        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(
                multiplier=self.initial_backoff_s,
                min=self.initial_backoff_s,
                max=self.max_backoff_s,
            ),
            retry=retry_if_exception(self.retryable),
            sleep=self._sleep,
            before_sleep=log_retry,
            reraise=True,
        )

    async def run(self, fn: Callable[..., Awaitable[T]], *args: Any, label: str = "", **kwargs: Any) -> T:
        """Call ``fn`` until it succeeds, fails permanently, or attempts run out."""
        return await self._retrying(label or getattr(fn, "__name__", "call"))(fn, *args, **kwargs)


class QuotaGuard:
    """Applies the ledger check, the retry policy and cost recording to one call."""

    def __init__(self, ledger: QuotaLedger, policy: RetryPolicy):
        self.ledger = ledger
        self.policy = policy
        self.fallbacks = 0

    def check(self, service: str, estimate: float) -> None:
        """Raise QuotaExceeded if ``estimate`` does not fit in today's budget."""
        if not self.ledger.can_afford(estimate):
            remaining = getattr(self.ledger, "get_remaining", lambda: 0.0)()
            raise QuotaExceeded(service, estimate, remaining)

    async def call(
        self,
        service: str,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        *,
        estimate: float,
        fallback: T,
        actual_cost: Optional[Callable[[T], float]] = None,
        session_id: str = "",
    ) -> T:
        try:
            self.check(service, estimate)
        except QuotaExceeded as e:
            self.fallbacks += 1
            logger.warning("quota_exceeded_using_fallback",
                           service=service, operation=operation,
                           estimate=round(e.estimate, 6), remaining=round(e.remaining, 6))
            return fallback

        try:
            result = await self.policy.run(fn, label=f"{service}.{operation}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.fallbacks += 1
            logger.error("external_call_failed_using_fallback",
                         service=service, operation=operation,
                         transient=self.policy.retryable(e),
                         error=str(e))
            return fallback

        cost = actual_cost(result) if actual_cost is not None else estimate
        self.ledger.record_usage(service, cost, session_id=session_id, operation=operation)
        return result
