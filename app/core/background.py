"""
Fire-and-forget dispatch for side effects (audit writes, cache writes,
cache invalidation).

Dispatched coroutines run as detached asyncio tasks. Failures are logged
and never reach the caller.
"""
import asyncio
from collections.abc import Coroutine
from typing import Any

from app.utils import get_logger


log = get_logger(__name__)

# Strong references so pending tasks are not garbage collected mid-flight
_pending: set[asyncio.Task] = set()


async def _run_guarded(coro: Coroutine[Any, Any, Any], description: str) -> None:
    try:
        await coro
    except Exception as e:
        log.warning(f"Background task '{description}' failed: {e}")


def fire_and_forget(coro: Coroutine[Any, Any, Any], description: str = "side effect") -> asyncio.Task:
    """
    Schedule a coroutine without awaiting it.

    Args:
        coro: Coroutine to run
        description: Short label used in the failure log line

    Returns:
        The scheduled task
    """
    task = asyncio.create_task(_run_guarded(coro, description))
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task


async def drain_background_tasks() -> None:
    """Wait for every pending side effect. Used on shutdown and in tests."""
    while _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)
