"""Shared thread pool for blocking work started from the event loop.

Repository calls and ledger polling are synchronous (sqlite3, sync httpx).
Background tasks such as the reconcile loop hand them to this pool. The
caller's contextvars, including the bound logging context, are copied into
the pool thread for the duration of the call.

Usage:
    report = await run_in_executor(pipeline.reconcile)
"""

from __future__ import annotations

import asyncio
import contextvars
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

R = TypeVar("R")

DEFAULT_MAX_WORKERS = 4
DEFAULT_THREAD_PREFIX = "civic-blocking-"

_executor: ThreadPoolExecutor | None = None
_executor_lock = threading.Lock()


def get_executor(max_workers: int = DEFAULT_MAX_WORKERS) -> ThreadPoolExecutor:
    """The process-wide pool, created on first use."""
    global _executor
    with _executor_lock:
        if _executor is None:
            logger.info(f"Starting blocking-call pool with {max_workers} threads")
            _executor = ThreadPoolExecutor(
                max_workers=max_workers,
                thread_name_prefix=DEFAULT_THREAD_PREFIX,
            )
        return _executor


def shutdown_executor(wait: bool = True) -> None:
    """Stop the pool; the next ``get_executor`` call starts a fresh one."""
    global _executor
    with _executor_lock:
        executor, _executor = _executor, None
    if executor is not None:
        executor.shutdown(wait=wait)
        logger.info("Blocking-call pool stopped")


async def run_in_executor(func: Callable[..., R], *args: Any, **kwargs: Any) -> R:
    """Await a blocking call on the shared pool.

    Raises:
        RuntimeError: If called outside a running event loop
    """
    loop = asyncio.get_running_loop()
    context = contextvars.copy_context()
    return await loop.run_in_executor(
        get_executor(), partial(context.run, func, *args, **kwargs)
    )


__all__ = ["get_executor", "shutdown_executor", "run_in_executor"]
