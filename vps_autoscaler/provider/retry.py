# vps_autoscaler/provider/retry.py
"""Exponential backoff for transient provider and cluster errors."""

from dataclasses import dataclass
from datetime import datetime, timedelta

from vps_autoscaler.core.errors import ProviderAPIError, TransientProviderError


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff: base, 2*base, 4*base ... capped at max_seconds.

    max_attempts bounds how many transient failures are tolerated before
    the caller gives up and records a permanent failure.
    """

    base_seconds: float = 5.0
    max_seconds: float = 300.0
    max_attempts: int = 5

    def delay(self, attempts: int) -> float:
        """Delay before the next try, given how many attempts have already failed."""
        if attempts <= 0:
            return 0.0
        return min(self.base_seconds * (2 ** (attempts - 1)), self.max_seconds)

    def next_attempt_at(self, attempts: int, now: datetime) -> datetime:
        return now + timedelta(seconds=self.delay(attempts))

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


def is_transient(error: Exception) -> bool:
    if isinstance(error, TransientProviderError):
        return True
    if isinstance(error, ProviderAPIError):
        return error.is_transient()
    return False
