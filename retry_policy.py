"""
Per-step retry budget with exponential backoff.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional

import automation_config
from automation_errors import AutomationError

logger = logging.getLogger(__name__)


def is_retryable(error: BaseException) -> bool:
    """Structured errors carry their own flag; any other step error may be retried."""
    if isinstance(error, AutomationError):
        return error.retryable
    if isinstance(error, asyncio.CancelledError):
        return False
    return True


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = automation_config.MAX_RETRIES
    base_delay: float = automation_config.RETRY_DELAY
    backoff: float = automation_config.RETRY_BACKOFF
    max_delay: float = automation_config.RETRY_MAX_DELAY
    jitter: bool = True

    @classmethod
    def default(cls) -> "RetryPolicy":
        return cls()

    @classmethod
    def quick(cls) -> "RetryPolicy":
        return cls(max_attempts=2, base_delay=0.5, backoff=1.5, max_delay=2.0, jitter=False)

    @classmethod
    def slow(cls) -> "RetryPolicy":
        return cls(max_attempts=5, base_delay=2.0, backoff=2.0, max_delay=30.0, jitter=True)

    def with_attempts(self, max_attempts: Optional[int]) -> "RetryPolicy":
        if not max_attempts:
            return self
        return replace(self, max_attempts=max_attempts)

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        delay = min(self.base_delay * self.backoff ** (attempt - 1), self.max_delay)
        if self.jitter:
            delay += random.random() * 0.1 * delay
        return delay

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        return attempt < self.max_attempts and is_retryable(error)

    async def execute(
        self,
        fn: Callable[[], Awaitable[Any]],
        on_retry: Optional[Callable[[BaseException, int, float], Any]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> Any:
        """
        Run ``fn`` until it succeeds or the budget is spent.

        ``on_retry(error, attempt, delay)`` is called before each wait; it
        may raise to abort (used for cancellation). The last error is
        re-raised once retries are exhausted or the error is not retryable.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return await fn()
            except Exception as e:
                if not self.should_retry(e, attempt):
                    raise
                delay = self.delay_for(attempt)
                if on_retry is not None:
                    result = on_retry(e, attempt, delay)
                    if asyncio.iscoroutine(result):
                        await result
                await sleep(delay)
