"""Fire-and-forget tasks whose failures are logged, never raised."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine, Set

logger = logging.getLogger(__name__)

# Strong references so pending tasks are not garbage collected mid-flight.
_PENDING: Set[asyncio.Task[Any]] = set()


def _on_done(task: asyncio.Task[Any]) -> None:
    _PENDING.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning(
            "detached_task_failed task=%s error=%s",
            task.get_name(),
            exc,
            extra={"task": task.get_name(), "error": str(exc)},
        )


def spawn_detached(coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task[Any]:
    task = asyncio.create_task(coro, name=name)
    _PENDING.add(task)
    task.add_done_callback(_on_done)
    return task


async def drain(timeout: float = 5.0) -> None:
    """Wait for outstanding detached work; used on shutdown and in tests."""

    loop = asyncio.get_running_loop()
    for task in list(_PENDING):
        if task.get_loop() is not loop and task.get_loop().is_closed():
            _PENDING.discard(task)
    current = {task for task in _PENDING if task.get_loop() is loop}
    if not current:
        return
    _, pending = await asyncio.wait(current, timeout=timeout)
    for task in pending:
        task.cancel()


__all__ = ["drain", "spawn_detached"]
