"""Retry policy for chain RPC calls.

Every chain call gets a bounded timeout. Transient failures are retried with
capped, jittered exponential backoff; rate-limit responses pause at least
``rate_limit_pause`` (or the server's Retry-After) before the next attempt.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    stop_never,
    wait_exponential_jitter,
)
from tenacity.wait import wait_base

from fusioncross.errors import ChainTimeout, RateLimited, TransientChainError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff and timeout parameters for chain operations."""

    max_attempts: int = 5
    initial_backoff: float = 1.0
    max_backoff: float = 30.0
    jitter: float = 1.0
    rate_limit_pause: float = 15.0
    timeout: float = 20.0

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        """Build the policy from application settings."""
        return cls(
            max_attempts=settings.relay_max_attempts,
            initial_backoff=settings.relay_backoff_initial,
            max_backoff=settings.relay_backoff_max,
            jitter=settings.relay_backoff_jitter,
            rate_limit_pause=settings.relay_rate_limit_pause,
            timeout=settings.rpc_timeout_seconds,
        )


class wait_chain_backoff(wait_base):
    """Exponential jittered wait that backs off harder on rate limiting."""

    def __init__(self, policy: RetryPolicy):
        self.policy = policy
        self._exponential = wait_exponential_jitter(
            initial=policy.initial_backoff,
            max=policy.max_backoff,
            jitter=policy.jitter,
        )

    def __call__(self, retry_state) -> float:
        delay = self._exponential(retry_state)
        outcome = retry_state.outcome
        if outcome is not None and outcome.failed:
            exc = outcome.exception()
            if isinstance(exc, RateLimited):
                delay = max(delay, self.policy.rate_limit_pause, exc.retry_after or 0)
        return delay


async def with_timeout(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Await with a deadline, converting the timeout into ChainTimeout."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        raise ChainTimeout(f"{operation} timed out after {timeout}s")


async def call_with_retry(
    operation: str,
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    max_attempts: Optional[int] = None,
    before_attempt: Optional[Callable[[], None]] = None,
) -> T:
    """Run a chain call under the retry policy.

    Args:
        operation: Description for logging
        fn: Zero-argument factory returning a fresh awaitable per attempt
        policy: Backoff/timeout parameters
        max_attempts: Override the policy's attempt count (0 = retry forever)
        before_attempt: Hook run before each attempt; may raise to abort
            (e.g. Expired once the timelock passes)

    Returns:
        The call's result

    Raises:
        TransientChainError: The last transient error once attempts are exhausted
        SwapError: Any non-transient error, immediately
    """
    attempts = policy.max_attempts if max_attempts is None else max_attempts
    retrying = AsyncRetrying(
        stop=stop_never if attempts == 0 else stop_after_attempt(attempts),
        wait=wait_chain_backoff(policy),
        retry=retry_if_exception_type(TransientChainError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )

    async for attempt in retrying:
        with attempt:
            if before_attempt is not None:
                before_attempt()
            result = await with_timeout(fn(), policy.timeout, operation)
    return result
