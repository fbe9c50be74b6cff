"""Utility functions for Chapterbell."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar

T = TypeVar("T")

# Calls that outlive their deadline keep running here until they return;
# the caller has already moved on.
_deadline_executor: Optional[ThreadPoolExecutor] = None
_deadline_lock = threading.Lock()


class DeadlineExceeded(Exception):
    """Raised when a call does not finish within its deadline."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to an aware UTC datetime; naive values are taken to be UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_number(number: float) -> str:
    """Render a chapter number without a trailing .0 (12.0 -> '12', 12.5 -> '12.5')."""
    if float(number).is_integer():
        return str(int(number))
    return f"{number:g}"


def _get_deadline_executor() -> ThreadPoolExecutor:
    global _deadline_executor
    with _deadline_lock:
        if _deadline_executor is None:
            _deadline_executor = ThreadPoolExecutor(
                max_workers=32, thread_name_prefix="deadline"
            )
        return _deadline_executor


def call_with_deadline(
    func: Callable[..., T],
    timeout: float,
    *args: Any,
    on_done: Optional[Callable[[], None]] = None,
    **kwargs: Any,
) -> T:
    """Run func(*args, **kwargs) and wait at most `timeout` seconds for it.

    Raises DeadlineExceeded on timeout. Exceptions raised by func propagate.
    `on_done` runs once func has really returned or raised, which can be
    well after the deadline.
    """
    try:
        future = _get_deadline_executor().submit(func, *args, **kwargs)
    except RuntimeError:
        if on_done is not None:
            on_done()
        raise
    if on_done is not None:
        future.add_done_callback(lambda _future: on_done())
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        future.cancel()
        name = getattr(func, "__qualname__", repr(func))
        raise DeadlineExceeded(f"{name} did not finish within {timeout:.1f}s") from None
