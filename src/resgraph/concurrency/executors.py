# src/resgraph/concurrency/executors.py
from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
import asyncio
import functools
import inspect
import os
from typing import Any, Callable, Optional

# One shared pool for blocking provider calls and state-file writes.
# Run-level concurrency is bounded by the executor's semaphore, not here.
_SHARED_POOL = ThreadPoolExecutor(
    max_workers=int(os.getenv("RESGRAPH_IO_THREADS", "16")),
    thread_name_prefix="resgraph-io",
)


async def run_blocking(
    func: Callable[..., Any],
    *args: Any,
    pool: Optional[ThreadPoolExecutor] = None,
    **kwargs: Any,
) -> Any:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(pool or _SHARED_POOL, functools.partial(func, *args, **kwargs))


async def call_maybe_async(func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    """Await coroutine functions directly; push plain functions onto the pool."""
    if inspect.iscoroutinefunction(func):
        return await func(*args, **kwargs)
    return await run_blocking(func, *args, **kwargs)


def accepts_kwarg(func: Callable[..., Any], name: str) -> bool:
    """True when `func` can be called with keyword `name`; False if it has no signature."""
    try:
        return name in inspect.signature(func).parameters
    except (TypeError, ValueError):
        return False
