"""
Async-to-sync bridge for Celery tasks.

Runs visit coroutines from synchronous Celery task bodies, reusing a
per-worker event loop when one is registered and otherwise running each
coroutine on a fresh loop that is torn down afterwards.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import threading
from typing import TYPE_CHECKING, Any, TypeVar

from core.redis import close_shared_redis
from db import db_manager

if TYPE_CHECKING:
    from collections.abc import Coroutine

logger = logging.getLogger(__name__)

T = TypeVar("T")

_worker_loop: asyncio.AbstractEventLoop | None = None
_worker_loop_pid: int | None = None
_worker_loop_thread_id: int | None = None


def set_worker_loop(loop: asyncio.AbstractEventLoop | None) -> None:
    """Register the per-worker event loop for sync-to-async bridging."""
    global _worker_loop, _worker_loop_pid, _worker_loop_thread_id
    _worker_loop = loop
    if loop is None:
        _worker_loop_pid = None
        _worker_loop_thread_id = None
        return
    _worker_loop_pid = os.getpid()
    _worker_loop_thread_id = threading.get_ident()


def get_worker_loop() -> asyncio.AbstractEventLoop | None:
    """Return the registered worker loop if it's valid for this process and thread."""
    loop = _worker_loop
    if loop is None:
        return None
    if _worker_loop_pid != os.getpid() or loop.is_closed():
        set_worker_loop(None)
        return None
    if _worker_loop_thread_id != threading.get_ident():
        return None
    return loop


async def _release_resources() -> None:
    try:
        await close_shared_redis()
    except Exception as e:
        logger.warning("Error closing Redis client: %s", e)
    try:
        await db_manager.cleanup_connections()
    except Exception as e:
        logger.warning("Error cleaning up DB connections: %s", e)


def _cancel_pending(loop: asyncio.AbstractEventLoop) -> None:
    pending = asyncio.all_tasks(loop)
    for task in pending:
        task.cancel()
    if pending:
        loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))


def shutdown_worker_loop() -> None:
    """Gracefully close per-worker async resources and loop."""
    loop = get_worker_loop()
    try:
        if loop is not None and not loop.is_closed():
            try:
                _cancel_pending(loop)
                loop.run_until_complete(_release_resources())
            except Exception as e:
                logger.warning("Error shutting down worker loop: %s", e)
            loop.close()
    finally:
        set_worker_loop(None)
        with contextlib.suppress(Exception):
            asyncio.set_event_loop(None)


def _ensure_no_running_loop() -> None:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return
    msg = "run_async_from_sync called while an event loop is running"
    raise RuntimeError(msg)


async def _run_with_db(coro: Coroutine[Any, Any, T]) -> T:
    await db_manager.init_beanie()
    return await coro


def run_async_from_sync(coro: Coroutine[Any, Any, T]) -> T:
    """
    Run an async coroutine from a synchronous context, managing the event loop.

    The database client is bound to the loop it was created on, so Beanie is
    (re)initialized for the active loop before the coroutine runs.

    Args:
        coro: The awaitable coroutine to execute.

    Returns:
        The result of the coroutine.

    Example:
        result = run_async_from_sync(cleanup_visits_async())
    """
    try:
        _ensure_no_running_loop()
    except RuntimeError:
        coro.close()
        raise
    loop = get_worker_loop()
    owns_loop = loop is None
    if owns_loop:
        loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    try:
        return loop.run_until_complete(_run_with_db(coro))
    except Exception:
        logger.error("Exception occurred during run_until_complete", exc_info=True)
        raise
    finally:
        if owns_loop:
            try:
                _cancel_pending(loop)
                loop.run_until_complete(_release_resources())
                loop.close()
            except Exception as e:
                logger.warning("Error during event loop cleanup: %s", e)
            finally:
                asyncio.set_event_loop(None)
