"""Fire-and-forget scheduling for escalation work that must not block a scan."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any

logger = logging.getLogger(__name__)
_PENDING_TASKS: set[asyncio.Task[Any]] = set()


def fire_and_forget(
    coro: Coroutine[Any, Any, Any], *, task_name: str | None = None
) -> asyncio.Task[Any] | None:
    """Schedule a coroutine detached from the caller and log its failures.

    The task is kept referenced until it finishes so the event loop cannot
    garbage-collect an in-flight webhook retry chain.
    """
    try:
        task = asyncio.create_task(coro, name=task_name)
    except RuntimeError:
        # No running loop (e.g. during shutdown); the coroutine never starts.
        coro.close()
        logger.warning("No running loop, dropped background task %s", task_name or "unnamed task")
        return None
    _PENDING_TASKS.add(task)

    def _on_done(done_task: asyncio.Task[Any]) -> None:
        _PENDING_TASKS.discard(done_task)
        if done_task.cancelled():
            return
        exc = done_task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed",
                task_name or "unnamed task",
                exc_info=(type(exc), exc, exc.__traceback__),
            )

    task.add_done_callback(_on_done)
    return task


def pending_task_count() -> int:
    return sum(1 for task in _PENDING_TASKS if not task.done())


async def drain_background_tasks(timeout_seconds: float = 1.0) -> None:
    """Wait for in-flight background tasks, cancelling stragglers.

    Used at shutdown and by tests that assert on escalation side effects.
    """
    pending = {task for task in _PENDING_TASKS if not task.done()}
    if not pending:
        return

    _, still_pending = await asyncio.wait(pending, timeout=timeout_seconds)
    for task in still_pending:
        task.cancel()

    if still_pending:
        await asyncio.gather(*still_pending, return_exceptions=True)
