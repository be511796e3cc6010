"""Tests for the chain call retry policy."""

import asyncio

import pytest

from fusioncross.errors import (
    ChainError,
    ChainTimeout,
    ChainUnavailable,
    Expired,
    RateLimited,
)
from fusioncross.utils.retry import RetryPolicy, call_with_retry, wait_chain_backoff


class Flaky:
    """Callable failing with the given errors before succeeding."""

    def __init__(self, *errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class TestCallWithRetry:
    """Tests for call_with_retry."""

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_errors(self, fast_policy):
        fn = Flaky(ChainUnavailable("down"), RateLimited("slow down"))

        assert await call_with_retry("op", fn, fast_policy) == "ok"
        assert fn.calls == 3

    @pytest.mark.asyncio
    async def test_non_transient_raised_immediately(self, fast_policy):
        fn = Flaky(ChainError("rejected"))

        with pytest.raises(ChainError):
            await call_with_retry("op", fn, fast_policy)
        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_exhausted(self, fast_policy):
        fn = Flaky(*[ChainUnavailable("down") for _ in range(5)])

        with pytest.raises(ChainUnavailable):
            await call_with_retry("op", fn, fast_policy)
        assert fn.calls == 3

    @pytest.mark.asyncio
    async def test_max_attempts_override(self, fast_policy):
        fn = Flaky(ChainUnavailable("down"), ChainUnavailable("down"))

        with pytest.raises(ChainUnavailable):
            await call_with_retry("op", fn, fast_policy, max_attempts=1)
        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_before_attempt_aborts(self, fast_policy):
        """An expiry check between attempts stops the retries."""
        fn = Flaky(ChainUnavailable("down"), ChainUnavailable("down"))
        checks = []

        def check():
            checks.append(1)
            if len(checks) > 1:
                raise Expired("too late")

        with pytest.raises(Expired):
            await call_with_retry("op", fn, fast_policy, before_attempt=check)
        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_timeout_becomes_chain_timeout(self):
        policy = RetryPolicy(max_attempts=1, initial_backoff=0, max_backoff=0, jitter=0, timeout=0.01)

        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(ChainTimeout):
            await call_with_retry("slow", slow, policy)


class TestBackoff:
    """Tests for the rate-limit aware wait."""

    class _Outcome:
        def __init__(self, exc):
            self._exc = exc
            self.failed = True

        def exception(self):
            return self._exc

    class _State:
        def __init__(self, exc, attempt_number=1):
            self.outcome = TestBackoff._Outcome(exc)
            self.attempt_number = attempt_number

    def test_rate_limit_pauses_longer(self):
        policy = RetryPolicy(initial_backoff=0, max_backoff=0, jitter=0, rate_limit_pause=15)
        wait = wait_chain_backoff(policy)

        assert wait(self._State(ChainUnavailable("down"))) == 0
        assert wait(self._State(RateLimited("slow"))) == 15
        assert wait(self._State(RateLimited("slow", retry_after=40))) == 40
