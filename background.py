"""
Background jobs detached from the request that started them.

Failures are logged and never reach the HTTP caller.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Set

logger = logging.getLogger(__name__)

# Keep references so running tasks aren't garbage collected
_background_tasks: Set[asyncio.Task] = set()


def spawn(job: Callable[..., Awaitable[None]], *args, name: str = None) -> asyncio.Task:
    """
    Run ``job(*args)`` as an independent task on the running event loop.

    Returns:
        asyncio.Task: The task, already scheduled
    """
    job_name = name or getattr(job, "__qualname__", repr(job))

    async def runner():
        try:
            await job(*args)
        except Exception:
            logger.exception(f"Background job {job_name} failed")

    task = asyncio.get_running_loop().create_task(runner(), name=job_name)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def pending_jobs() -> int:
    return len(_background_tasks)
