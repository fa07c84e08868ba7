from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from typing import Any, Callable, TypeVar

from flipfleet.errors import TransientExecutionFailure

T = TypeVar("T")


class VenueTimeout(TransientExecutionFailure):
    """Raised when a blocking venue call does not return within its ceiling."""


def call_with_timeout(func: Callable[..., T], timeout_seconds: float, *args: Any, **kwargs: Any) -> T:
    """
    Execute a function with a timeout. If it takes longer than timeout_seconds, raise VenueTimeout.

    Note: this uses a worker thread; the function should be thread-safe.
    The underlying call keeps running in the background if it times out.
    """
    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout_seconds)
    except FuturesTimeoutError as exc:
        name = getattr(func, "__name__", "venue call")
        raise VenueTimeout(f"{name} timed out after {timeout_seconds}s") from exc
    finally:
        # Do not join a stuck worker; the caller has a ceiling to honor.
        executor.shutdown(wait=False)
