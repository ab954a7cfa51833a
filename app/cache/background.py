"""
Detached background tasks with their own error boundary.

Background refreshes are never awaited by the request that triggered them.
Failures are logged and dropped here instead of surfacing as unobserved
task exceptions.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Set

logger = logging.getLogger("cache.background")

# Strong references so the loop does not garbage-collect running tasks
_background_tasks: Set[asyncio.Task] = set()


def spawn_background(factory: Callable[[], Awaitable], label: str) -> asyncio.Task:
    """
    Run `factory()` as a detached task on the running loop.

    Args:
        factory: Zero-argument callable returning an awaitable
        label: Name used in log messages

    Returns:
        The created task (callers may ignore it)
    """

    async def _guarded():
        try:
            return await factory()
        except asyncio.CancelledError:
            logger.info(f"Background task cancelled: {label}")
            raise
        except Exception as e:
            logger.error(f"Background task failed: {label} - {e}", exc_info=True)
            return None

    task = asyncio.get_running_loop().create_task(_guarded(), name=label)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def pending_background_tasks() -> int:
    """Number of background tasks still running."""
    return len(_background_tasks)


async def drain_background_tasks() -> None:
    """Wait for every running background task (used at shutdown and in tests)."""
    loop = asyncio.get_running_loop()
    while True:
        pending = [t for t in _background_tasks if t.get_loop() is loop and not t.done()]
        if not pending:
            return
        await asyncio.gather(*pending, return_exceptions=True)
