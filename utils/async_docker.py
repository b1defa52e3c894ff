"""
Async wrapper for the blocking Docker SDK.

docker-py is synchronous; every call is pushed to the default thread pool so
the event loop keeps serving the stop signal and the registry client.
"""

import asyncio
import functools
from typing import Any, Callable, TypeVar

T = TypeVar("T")


async def async_docker_call(func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """
    Run a blocking Docker SDK call in a worker thread.

    Example:
        >>> services = await async_docker_call(client.services.list)
    """
    return await asyncio.to_thread(functools.partial(func, *args, **kwargs))
