"""
Deadline races for request handling.

A race waits on a task for at most `timeout_s`. Losing the race stops the
wait only; the task is detached (kept alive and its outcome logged) unless
the caller asks for cancellation.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable

from .exceptions import RequestTimeoutError
from .observability import get_logger

logger = get_logger(__name__)


class BackgroundTasks:
    """Holds references to detached tasks until they finish."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def detach(self, task: asyncio.Task, label: str) -> None:
        if task.done():
            self._log_outcome(task, label)
            return
        self._tasks.add(task)
        task.add_done_callback(lambda done: self._finish(done, label))
        logger.info("task_detached", label=label, pending=len(self._tasks))

    def _finish(self, task: asyncio.Task, label: str) -> None:
        self._tasks.discard(task)
        self._log_outcome(task, label)

    @staticmethod
    def _log_outcome(task: asyncio.Task, label: str) -> None:
        if task.cancelled():
            logger.info("detached_task_cancelled", label=label)
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("detached_task_failed", label=label, error=str(exc))
        else:
            logger.info("detached_task_completed", label=label)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


async def race_deadline(
    work: Awaitable[Any] | asyncio.Task,
    timeout_s: float,
    *,
    phase: str,
    cold: bool,
    cancel_on_timeout: bool = False,
    background: BackgroundTasks | None = None,
) -> Any:
    """
    Awaits `work` until `timeout_s` elapses.
    Raises RequestTimeoutError on expiry; any other failure of `work` propagates unchanged.
    """
    task = work if isinstance(work, asyncio.Task) else asyncio.ensure_future(work)
    try:
        # wait_for owns the timer and clears it as soon as either side completes.
        return await asyncio.wait_for(asyncio.shield(task), timeout=timeout_s)
    except asyncio.TimeoutError as exc:
        logger.warning("deadline_exceeded", phase=phase, cold=cold, timeout_s=timeout_s)
        if cancel_on_timeout:
            task.cancel()
        elif background is not None:
            background.detach(task, phase)
        raise RequestTimeoutError(phase=phase, cold=cold, timeout_s=timeout_s) from exc
    except asyncio.CancelledError:
        # The request itself went away; the work follows the same detach/cancel policy.
        if cancel_on_timeout:
            task.cancel()
        elif background is not None:
            background.detach(task, phase)
        raise
