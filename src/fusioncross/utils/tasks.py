"""Background task helpers."""

import asyncio
import logging
from typing import Any, Coroutine

logger = logging.getLogger(__name__)


def log_task_failure(task: asyncio.Task) -> None:
    """Done callback logging the exception a background task died with."""
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Task {task.get_name()} failed: {error}", exc_info=error)


def spawn(coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
    """Start a background task whose failure ends up in the log."""
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(log_task_failure)
    return task
