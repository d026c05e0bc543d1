"""
Unit tests for the retry policy.
"""

import asyncio
import unittest

from automation_errors import ScopeBlockedError, SelectorResolutionError
from retry_policy import RetryPolicy, is_retryable


class Sleeps:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class TestIsRetryable(unittest.TestCase):
    """Test error classification."""

    def test_structured_errors(self):
        """Engine errors carry their own retryable flag."""
        self.assertTrue(is_retryable(SelectorResolutionError("gone", selector="#a")))
        self.assertFalse(is_retryable(ScopeBlockedError("blocked")))

    def test_plain_errors(self):
        """Other exceptions are retried; cancellation is not."""
        self.assertTrue(is_retryable(RuntimeError("flaky")))
        self.assertFalse(is_retryable(asyncio.CancelledError()))


class TestDelays(unittest.TestCase):
    """Test backoff arithmetic."""

    def test_exponential_backoff(self):
        """Delay grows by the backoff factor up to the ceiling."""
        policy = RetryPolicy(max_attempts=5, base_delay=1.0, backoff=2.0, max_delay=5.0, jitter=False)
        self.assertEqual([policy.delay_for(n) for n in (1, 2, 3, 4)], [1.0, 2.0, 4.0, 5.0])

    def test_jitter_bounded(self):
        """Jitter adds at most ten percent."""
        policy = RetryPolicy(base_delay=1.0, backoff=1.0, jitter=True)
        for _ in range(20):
            self.assertTrue(1.0 <= policy.delay_for(1) <= 1.1)

    def test_with_attempts(self):
        """Overriding attempts keeps the other settings."""
        policy = RetryPolicy.quick()
        self.assertIs(policy.with_attempts(None), policy)
        self.assertEqual(policy.with_attempts(7).max_attempts, 7)
        self.assertEqual(policy.with_attempts(7).base_delay, policy.base_delay)


class TestExecute(unittest.IsolatedAsyncioTestCase):
    """Test the retry loop."""

    def setUp(self):
        self.policy = RetryPolicy(max_attempts=3, base_delay=0.5, backoff=2.0, max_delay=10, jitter=False)
        self.sleep = Sleeps()

    async def test_succeeds_after_retries(self):
        """Transient failures are retried until success."""
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise SelectorResolutionError("not yet", selector="#a")
            return "ok"

        retries = []
        result = await self.policy.execute(flaky, on_retry=lambda e, n, d: retries.append((n, d)), sleep=self.sleep)
        self.assertEqual(result, "ok")
        self.assertEqual(retries, [(1, 0.5), (2, 1.0)])
        self.assertEqual(self.sleep.delays, [0.5, 1.0])

    async def test_gives_up_after_budget(self):
        """The last error is raised once attempts run out."""
        calls = []

        async def always_fails():
            calls.append(1)
            raise RuntimeError(f"failure {len(calls)}")

        with self.assertRaises(RuntimeError) as ctx:
            await self.policy.execute(always_fails, sleep=self.sleep)
        self.assertEqual(str(ctx.exception), "failure 3")
        self.assertEqual(len(calls), 3)

    async def test_non_retryable_fails_fast(self):
        """Errors flagged as not retryable are raised on the first attempt."""
        calls = []

        async def blocked():
            calls.append(1)
            raise ScopeBlockedError("blocked")

        with self.assertRaises(ScopeBlockedError):
            await self.policy.execute(blocked, sleep=self.sleep)
        self.assertEqual(len(calls), 1)
        self.assertEqual(self.sleep.delays, [])

    async def test_on_retry_can_abort(self):
        """An exception from on_retry stops the loop."""
        async def fails():
            raise RuntimeError("x")

        def abort(error, attempt, delay):
            raise ValueError("stop")

        with self.assertRaises(ValueError):
            await self.policy.execute(fails, on_retry=abort, sleep=self.sleep)


if __name__ == '__main__':
    unittest.main()
