"""
Retry policy for failed publish attempts.

Maps the number of failed attempts to the next eligible time with a
geometric backoff (5, 15, 45 minutes by default) and caps the number of
retries.  Pure: takes ``now`` explicitly and touches no I/O.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from pinscheduler.exceptions import ConfigurationError


@dataclass(frozen=True)
class RetryDecision:
    """Result of applying the policy to one failure.

    Attributes:
        retry_count: Value to persist on the job.
        next_retry_at: When the job may run again, ``None`` once exhausted.
    """

    retry_count: int
    next_retry_at: Optional[datetime]

    @property
    def exhausted(self) -> bool:
        return self.next_retry_at is None


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded geometric backoff.

    ``delay(n) = base_delay_minutes * multiplier ** (n - 1)`` for the
    ``n``-th failure, while ``n <= max_retries``.

    Attributes:
        max_retries: Maximum number of retries after the first failure.
        base_delay_minutes: Delay after the first failure.
        multiplier: Growth factor between consecutive delays.
    """

    max_retries: int = 3
    base_delay_minutes: float = 5.0
    multiplier: float = 3.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigurationError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_delay_minutes <= 0:
            raise ConfigurationError(
                f"base_delay_minutes must be positive, got {self.base_delay_minutes}"
            )
        if self.multiplier < 1:
            raise ConfigurationError(f"multiplier must be >= 1, got {self.multiplier}")

    def delay_for(self, retry_count: int) -> timedelta:
        """Backoff delay after the ``retry_count``-th failure (1-based)."""
        if retry_count < 1:
            raise ValueError(f"retry_count must be >= 1, got {retry_count}")
        return timedelta(
            minutes=self.base_delay_minutes * self.multiplier ** (retry_count - 1)
        )

    def on_failure(self, retry_count: int, now: datetime) -> RetryDecision:
        """Apply the policy to a job that just failed.

        Args:
            retry_count: The job's ``retry_count`` before this failure.
            now: The failure instant.

        Returns:
            The new ``retry_count`` and ``next_retry_at``.  Once the cap
            is exceeded ``next_retry_at`` is ``None`` and ``retry_count``
            stays at ``max_retries``.
        """
        attempted = retry_count + 1
        if attempted > self.max_retries:
            return RetryDecision(retry_count=self.max_retries, next_retry_at=None)
        return RetryDecision(
            retry_count=attempted,
            next_retry_at=now + self.delay_for(attempted),
        )


__all__ = [
    "RetryDecision",
    "RetryPolicy",
]
