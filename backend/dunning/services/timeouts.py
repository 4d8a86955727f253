"""Bounded calls into collaborators that may hang."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class CallTimeout(TimeoutError):
    """Raised when a bounded call does not return in time."""


def call_with_timeout(func: Callable[..., Any], timeout: Optional[float], *args, **kwargs) -> Any:
    """Run ``func`` on a worker thread and wait at most ``timeout`` seconds.

    A ``None`` or non-positive timeout calls ``func`` inline. On timeout the worker
    is abandoned and ``CallTimeout`` is raised; exceptions from ``func`` propagate.
    """

    if not timeout or timeout <= 0:
        return func(*args, **kwargs)

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="dunning-call")
    future = executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as exc:
        logger.warning("Call to %s exceeded %.1fs", getattr(func, "__qualname__", func), timeout)
        raise CallTimeout(f"Call did not complete within {timeout}s") from exc
    finally:
        executor.shutdown(wait=False)
