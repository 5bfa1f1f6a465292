"""Fire-and-forget background tasks."""

import asyncio
import logging
from typing import Any, Coroutine

logger = logging.getLogger(__name__)

# Strong references; the event loop only keeps weak ones.
_running: set[asyncio.Task] = set()


def create_background_task(coro: Coroutine[Any, Any, Any], task_name: str = "background_task") -> asyncio.Task:
    """
    Schedule a coroutine without awaiting it.

    Exceptions are logged instead of being lost with the task.
    """
    async def _wrapped_task():
        try:
            await coro
        except Exception as e:
            logger.exception(f"Error in background task '{task_name}': {e}")

    task = asyncio.create_task(_wrapped_task(), name=task_name)
    _running.add(task)
    task.add_done_callback(_running.discard)
    return task
