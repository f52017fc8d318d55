"""
Periodic schedules (clock tick, persistence flush, mailbox poll)
Each job is an asyncio task owned by a `scheduled` block and is
cancelled on every exit path of that block.
"""

import asyncio
import inspect
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, List, Tuple, Union

logger = logging.getLogger(__name__)

Job = Callable[[], Union[Any, Awaitable[Any]]]


async def run_every(interval: float, job: Job, name: str = "job"):
    """Call job every `interval` seconds until cancelled. Failures are logged and retried."""
    while True:
        await asyncio.sleep(interval)
        try:
            result = job()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Scheduled {name} failed, retrying in {interval}s")


@asynccontextmanager
async def scheduled(*jobs: Tuple[float, Job, str]):
    """
    async with scheduled((1.0, session.tick, "tick"), (5.0, session.flush, "flush")):
        ...
    """
    tasks: List[asyncio.Task] = [
        asyncio.create_task(run_every(interval, job, name), name=name)
        for interval, job, name in jobs
    ]
    try:
        yield tasks
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
