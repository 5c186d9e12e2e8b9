# linkgrab/infra/tasks.py
from __future__ import annotations

import asyncio
from typing import Coroutine

from linkgrab.infra.logging_config import get_logger

logger = get_logger(__name__)

# Strong references so fire-and-forget tasks aren't garbage collected mid-flight.
_background_tasks: set[asyncio.Task] = set()


def safe_create_task(coro: Coroutine, *, name: str | None = None) -> asyncio.Task:
    """Create a background task with exception logging to avoid 'Task exception was never retrieved'."""
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task) -> None:
    """Callback: log unhandled exceptions from fire-and-forget tasks."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            f"Background task {task.get_name()!r} failed: {exc}",
            exc_info=(type(exc), exc, exc.__traceback__),
        )


async def drain_background_tasks(timeout: float = 10.0) -> None:
    """Wait for in-flight background tasks at shutdown, cancelling stragglers."""
    pending = [t for t in _background_tasks if not t.done()]
    if not pending:
        return
    logger.info(f"Waiting for {len(pending)} background task(s)")
    done, still_pending = await asyncio.wait(pending, timeout=timeout)
    for task in still_pending:
        task.cancel()
    if still_pending:
        await asyncio.gather(*still_pending, return_exceptions=True)
