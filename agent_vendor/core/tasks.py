"""Fire-and-forget background tasks.

The event loop only keeps weak references to tasks, so detached work is
parked in a module-level set until it completes.
"""

import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

_background_tasks: set[asyncio.Task] = set()


def _on_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "background_task_failed",
            task=task.get_name(),
            error=str(exc),
            error_type=type(exc).__name__,
        )


def spawn(coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task:
    """Schedule ``coro`` detached from the caller and return its task."""
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_on_done)
    return task


async def drain(timeout: float = 5.0) -> None:
    """Wait for outstanding background tasks, used on shutdown and in tests."""
    pending = [t for t in _background_tasks if not t.done()]
    if not pending:
        return
    await asyncio.wait(pending, timeout=timeout)
