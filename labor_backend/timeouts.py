"""
Deadlines for storage calls made while serving a request.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, TypeVar

from labor_backend.errors import StorageTimeoutError

T = TypeVar("T")

# Storage calls run here so the request thread can stop waiting on them.
_executor = ThreadPoolExecutor(max_workers=16, thread_name_prefix="storage-call")


def call_with_timeout(
    fn: Callable[..., T], *args: Any, timeout: float, **kwargs: Any
) -> T:
    """
    Run ``fn`` and return its result, or raise StorageTimeoutError.

    The call itself keeps running after a timeout; every storage operation
    is idempotent or conditional, so a retry after a late success is safe.
    """
    future = _executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as exc:
        name = getattr(fn, "__name__", repr(fn))
        raise StorageTimeoutError(f"{name} timed out after {timeout}s") from exc
