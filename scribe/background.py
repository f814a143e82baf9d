"""Supervision helpers for long-running asyncio tasks and blocking calls.

Tasks started with :func:`spawn` are kept referenced until they finish (so
the loop cannot garbage-collect them mid-flight), registered by name so a
caller can look them up or cancel them later, and have their exceptions
logged instead of vanishing.
"""
from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Executor
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

_named_tasks: Dict[str, asyncio.Task[Any]] = {}
_anonymous_tasks: set[asyncio.Task[Any]] = set()


def spawn(coro: Awaitable[Any], *, name: Optional[str] = None,
          on_error: Optional[Callable[[BaseException], None]] = None) -> asyncio.Task[Any]:
    """Start ``coro`` as a supervised task.

    A name that is already running is refused with RuntimeError so a second
    continuous worker cannot be started by accident.
    """
    if name and is_running(name):
        raise RuntimeError(f"Background task {name!r} is already running")

    task = asyncio.create_task(coro, name=name)  # type: ignore[arg-type]
    if name:
        _named_tasks[name] = task
    else:
        _anonymous_tasks.add(task)

    def _finished(t: asyncio.Task[Any]) -> None:
        if name and _named_tasks.get(name) is t:
            _named_tasks.pop(name, None)
        _anonymous_tasks.discard(t)
        if t.cancelled():
            logger.info("Background task %s cancelled", name or t.get_name())
            return
        exc = t.exception()
        if exc is None:
            return
        if on_error:
            try:
                on_error(exc)
            except Exception:  # noqa: BLE001
                logger.exception("Error in on_error callback for task %s", name or t.get_name())
        logger.error("Background task %s failed", name or t.get_name(), exc_info=exc)

    task.add_done_callback(_finished)
    return task


def get_task(name: str) -> Optional[asyncio.Task[Any]]:
    return _named_tasks.get(name)


def is_running(name: str) -> bool:
    task = _named_tasks.get(name)
    return task is not None and not task.done()


async def cancel(name: str, *, timeout: float = 10.0) -> bool:
    """Cancel a named task and wait for it to unwind. False if nothing was running."""
    task = _named_tasks.get(name)
    if task is None or task.done():
        return False
    task.cancel()
    await asyncio.wait({task}, timeout=timeout)
    return True


async def run_sync(func: Callable[..., Any], *args: Any, executor: Optional[Executor] = None,
                   **kwargs: Any) -> Any:
    """Execute blocking code in the default executor and await the result."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(executor, partial(func, *args, **kwargs))


__all__ = ["spawn", "get_task", "is_running", "cancel", "run_sync"]
