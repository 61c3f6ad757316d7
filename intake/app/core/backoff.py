"""Backoff utilities.

`backoff_delay` returns the delay to wait before retry number ``attempt + 1``:
``initial_delay * multiplier ** attempt``. Growth is unbounded unless the caller
passes ``max_delay``.
"""
from __future__ import annotations


def backoff_delay(
    initial_delay: float,
    attempt: int,
    *,
    multiplier: float = 2.0,
    max_delay: float | None = None,
) -> float:
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    delay = initial_delay * (multiplier ** attempt)
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay
