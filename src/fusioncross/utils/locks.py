"""Concurrency control utilities.

Provides keyed locks so that work for one swap (or one slot, or one sending
identity) is serialized without blocking unrelated swaps.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable, Optional

logger = logging.getLogger(__name__)


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


class KeyedLock:
    """Registry of asyncio locks, one per key.

    Example:
        swap_locks = KeyedLock("swap")
        async with swap_locks.hold(swap_id, operation="close_auction"):
            ...
    """

    def __init__(self, name: str = "keyed", timeout: Optional[float] = 30.0):
        """Initialize the registry.

        Args:
            name: Label used in log messages
            timeout: Default time to wait for a lock (None = wait forever)
        """
        self.name = name
        self.timeout = timeout
        self._locks: dict[Hashable, asyncio.Lock] = {}

    def get(self, key: Hashable) -> asyncio.Lock:
        """Get or create the lock for a key."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def locked(self, key: Hashable) -> bool:
        """Check whether the lock for a key is currently held."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def discard(self, key: Hashable) -> None:
        """Drop an idle lock (e.g. once a swap is terminal)."""
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]

    def clear(self) -> None:
        """Clear all locks (useful for testing)."""
        self._locks.clear()

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(
        self,
        key: Hashable,
        timeout: Optional[float] = -1,
        operation: str = "operation",
    ) -> AsyncIterator[None]:
        """Acquire the lock for ``key`` for the duration of the block.

        Args:
            key: Lock key (swap id, slot tuple, address...)
            timeout: Seconds to wait; -1 uses the registry default, None waits forever
            operation: Description for logging

        Raises:
            LockTimeoutError: If the lock is not acquired in time
        """
        if timeout == -1:
            timeout = self.timeout
        lock = self.get(key)

        try:
            if timeout:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            else:
                await lock.acquire()
        except asyncio.TimeoutError:
            logger.warning(f"{self.name} lock timeout for {key} after {timeout}s: {operation}")
            raise LockTimeoutError(
                f"Could not acquire {self.name} lock for {key} within {timeout}s"
            )

        logger.debug(f"{self.name} lock acquired for {key}: {operation}")
        try:
            yield
        finally:
            lock.release()
            logger.debug(f"{self.name} lock released for {key}: {operation}")
