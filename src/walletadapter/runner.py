"""Detached background execution of treasury jobs."""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

JobFactory = Callable[[], Awaitable[object]]


class JobRunner:
    """Runs jobs as background tasks detached from the caller.

    Tasks are referenced until they finish so they are not garbage collected,
    and a request that spawned one can go away without cancelling it.
    """

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    @property
    def running(self) -> int:
        return len(self._tasks)

    def spawn(self, name: str, job: JobFactory) -> asyncio.Task:
        task = asyncio.create_task(self._run(name, job), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, job: JobFactory) -> None:
        logger.info(f"Job {name} started")
        try:
            await job()
        except asyncio.CancelledError:
            logger.warning(f"Job {name} cancelled")
            raise
        except Exception as e:
            logger.error(f"Job {name} failed: {e}", exc_info=True)
        else:
            logger.info(f"Job {name} finished")

    async def drain(self, timeout: float = 30.0) -> None:
        """Wait for running jobs, cancelling whatever is left after ``timeout``."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)

