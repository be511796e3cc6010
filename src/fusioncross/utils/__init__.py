"""Utility modules for fusioncross."""

from fusioncross.utils.locks import KeyedLock, LockTimeoutError
from fusioncross.utils.retry import RetryPolicy, call_with_retry, with_timeout
from fusioncross.utils.tasks import log_task_failure, spawn

__all__ = [
    "KeyedLock",
    "LockTimeoutError",
    "RetryPolicy",
    "call_with_retry",
    "log_task_failure",
    "spawn",
    "with_timeout",
]
