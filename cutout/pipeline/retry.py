"""
Retry Policy

Pure decision: given the index of the attempt that just failed and the
error it failed with, retry after an exponential delay or give up.
"""

from typing import Union

from pydantic import BaseModel

from cutout.core.exceptions import TransformCancelled


class Retry(BaseModel):
    after: float  # seconds


class GiveUp(BaseModel):
    reason: str


Decision = Union[Retry, GiveUp]


class RetryPolicy:
    """
    Exponential backoff with a capped number of attempts.

    Attempts are numbered from 0. After attempt `k` fails the next one runs
    `base_delay * 2**k` seconds later, unless `max_retries` attempts have
    been made already. Cancellation is never retried.
    """

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if base_delay < 0:
            raise ValueError("base_delay must not be negative")
        self.max_retries = max_retries
        self.base_delay = base_delay

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.MAX_RETRIES,
            base_delay=settings.retry_base_delay_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)

    def decide(self, attempt: int, error: BaseException) -> Decision:
        if isinstance(error, TransformCancelled):
            return GiveUp(reason="cancelled")
        if attempt + 1 >= self.max_retries:
            return GiveUp(reason="retries_exhausted")
        return Retry(after=self.delay_for(attempt))
