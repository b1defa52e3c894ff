"""
Cooperative cancellation helpers built on a single asyncio.Event stop signal.
"""

import asyncio
import logging
from typing import Awaitable, TypeVar

from updates.errors import ShutdownRequested

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def sleep_or_stop(stop_event: asyncio.Event, seconds: float) -> bool:
    """
    Sleep for up to `seconds`, waking early when the stop signal fires.

    Returns:
        True if the stop signal fired, False if the full interval elapsed
    """
    if stop_event.is_set():
        return True
    if seconds <= 0:
        return False
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        return True
    except asyncio.TimeoutError:
        return False


async def run_unless_stopped(stop_event: asyncio.Event, awaitable: Awaitable[T]) -> T:
    """
    Await `awaitable`, aborting it if the stop signal fires first.

    Used for registry HTTP calls, which should be cancelled rather than
    awaited to completion on shutdown.

    Raises:
        ShutdownRequested: the stop signal fired before the call finished
    """
    if stop_event.is_set():
        # Never started, so close it to avoid a "never awaited" warning
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise ShutdownRequested("Stop requested before call started")

    work = asyncio.ensure_future(awaitable)
    stopper = asyncio.ensure_future(stop_event.wait())
    try:
        done, _ = await asyncio.wait({work, stopper}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        work.cancel()
        raise
    finally:
        stopper.cancel()

    if work in done:
        return work.result()

    work.cancel()
    try:
        await work
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug(f"Aborted call finished with error during shutdown: {e}")
    raise ShutdownRequested("Stop requested while call was in flight")
