"""Supervised fire-and-forget work (background merges, best-effort blob deletes).

Spawned tasks are held in a module-level set until they finish so the event
loop cannot garbage-collect them mid-flight, and every failure is logged
because nobody awaits the task.
"""
from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Executor
from functools import partial
from typing import Any, Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)

_pending: Set[asyncio.Task[Any]] = set()


def spawn(coro: Awaitable[Any], *, name: Optional[str] = None) -> asyncio.Task[Any]:
    """Schedule ``coro`` without handing a handle back to the request."""
    task = asyncio.ensure_future(coro)
    if name:
        task.set_name(name)
    _pending.add(task)

    def _finished(t: asyncio.Task[Any]) -> None:
        _pending.discard(t)
        if t.cancelled():
            logger.debug("Background task %s cancelled", name or t.get_name())
            return
        exc = t.exception()
        if exc is None:
            return
        logger.error("Background task %s failed", name or t.get_name(), exc_info=exc)

    task.add_done_callback(_finished)
    return task


async def drain(timeout: Optional[float] = None) -> None:
    """Wait for everything spawned so far (shutdown hook, tests)."""
    while _pending:
        await asyncio.wait(list(_pending), timeout=timeout)
        if timeout is not None:
            break


async def run_sync(func: Callable[..., Any], *args: Any,
                   executor: Optional[Executor] = None, **kwargs: Any) -> Any:
    """Run blocking SDK or filesystem calls off the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(executor, partial(func, *args, **kwargs))


__all__ = ["spawn", "drain", "run_sync"]
