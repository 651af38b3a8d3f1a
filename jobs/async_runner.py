"""
Event loop bridge for dramatiq actors.

Actors are synchronous; the cycle engine is async. Every worker thread
owns one long-lived loop, and the per-thread AppContext (engine, Redis
client, HTTP session) is created on it and only ever awaited on it.
"""

import asyncio
import threading
from collections.abc import Coroutine
from typing import Any, TypeVar

from loguru import logger

T = TypeVar("T")

_local = threading.local()


def thread_loop() -> asyncio.AbstractEventLoop:
    """Return the calling thread's loop, creating it on first use."""
    loop: asyncio.AbstractEventLoop | None = getattr(_local, "loop", None)
    if loop is not None and not loop.is_closed():
        return loop

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    _local.loop = loop
    logger.debug(f"Event loop created for worker thread {threading.current_thread().name}")
    return loop


def run_async(coro: Coroutine[Any, Any, T]) -> T:
    """
    Run a coroutine to completion on the thread's loop.

    Exceptions propagate unchanged so dramatiq's Retries middleware sees
    them.
    """
    return thread_loop().run_until_complete(coro)
