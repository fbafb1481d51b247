"""
Per-call deadlines for external collaborator calls.

A call that misses its deadline raises ExternalTimeout, which callers treat
as a retryable failure and never as success.
"""

import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable

from .errors import ExternalTimeout

_executor = None
_executor_lock = threading.Lock()


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(max_workers=32, thread_name_prefix="external-call")
        return _executor


def call_with_deadline(fn: Callable[..., Any], deadline_sec: float, *args, **kwargs) -> Any:
    """Run fn with a deadline; exceptions raised by fn propagate unchanged."""
    future = _get_executor().submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=deadline_sec)
    except FutureTimeout as e:
        future.cancel()
        name = getattr(fn, "__qualname__", repr(fn))
        raise ExternalTimeout(f"{name} exceeded deadline of {deadline_sec}s") from e
