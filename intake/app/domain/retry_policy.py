"""Retry policy: retry a failed item after an exponential delay, or give up."""
from __future__ import annotations

from dataclasses import dataclass

from intake.app.core.backoff import backoff_delay


@dataclass(frozen=True)
class RetryDecision:
    should_retry: bool
    retries: int
    delay: float = 0.0


@dataclass(frozen=True)
class RetryPolicy:
    """
    max_retries is the number of automatic retries after the first attempt.
    With max_retries=3 an item is processed at most four times; the failure
    seen with retries == max_retries is permanent.

    The delay before retry r+1 is base_delay * 2**r, capped by max_delay when set.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float | None = None

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0:
            raise ValueError("retry delay must be >= 0")
        if self.max_delay is not None and self.max_delay < 0:
            raise ValueError("max retry delay must be >= 0")

    def decide(self, retries: int) -> RetryDecision:
        if retries >= self.max_retries:
            return RetryDecision(should_retry=False, retries=retries)
        return RetryDecision(
            should_retry=True,
            retries=retries + 1,
            delay=backoff_delay(self.base_delay, retries, max_delay=self.max_delay),
        )
