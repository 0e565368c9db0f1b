from __future__ import annotations

import time
from collections.abc import Callable
from typing import TypeVar

T = TypeVar("T")


def backoff_for_attempt(attempt_idx: int, backoff: list[float]) -> float:
    """
    Return backoff seconds for retry attempt index.

    attempt_idx is zero-based for retries: 0 means first retry wait.
    """
    if backoff:
        return float(backoff[min(attempt_idx, len(backoff) - 1)])
    return float(min(60, 2**attempt_idx))


def call_with_retries(
    fn: Callable[[], T],
    *,
    retry_on: tuple[type[BaseException], ...],
    backoff: list[float],
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``fn``; on ``retry_on`` errors wait per ``backoff`` and try again.

    There are ``len(backoff)`` retries after the first call; the last error
    propagates.
    """
    attempt_idx = 0
    while True:
        try:
            return fn()
        except retry_on:
            if attempt_idx >= len(backoff):
                raise
            sleep(backoff_for_attempt(attempt_idx, backoff))
            attempt_idx += 1
