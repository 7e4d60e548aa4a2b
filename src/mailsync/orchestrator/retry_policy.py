"""Retry policy for transient sync failures.

Implements exponential backoff with jitter and failure classification. Only
transient failures (timeouts, temporarily unavailable stores) are retried
within a pass; everything else waits for the next scheduled pass.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from mailsync.configuration.settings import Settings
from mailsync.errors import BatchFailedError, MailSyncError, TransientIOError


class RetryStrategy(str, Enum):
    """Retry strategy types for different backoff patterns."""

    EXPONENTIAL_BACKOFF = "exponential_backoff"  # 1s, 2s, 4s...
    FIXED_DELAY = "fixed_delay"  # 1s, 1s, 1s...
    IMMEDIATE = "immediate"  # No delay (testing only)


class FailureType(str, Enum):
    """Failure classification for retry decisions."""

    TRANSIENT = "transient"  # Timeouts, resets, store/database unavailable
    PERMANENT = "permanent"  # Credentials rejected, mailbox missing, inconsistent state
    UNKNOWN = "unknown"  # Unclassified errors


def classify_failure(exc: BaseException) -> FailureType:
    """Classify an exception raised while synchronizing a connection."""
    if isinstance(exc, BatchFailedError):
        return classify_failure(exc.cause)
    if isinstance(exc, TransientIOError):
        return FailureType.TRANSIENT
    if isinstance(exc, MailSyncError):
        return FailureType.PERMANENT
    return FailureType.UNKNOWN


class RetryPolicy(BaseModel):
    """Configurable retry policy.

    Attributes:
        strategy: Backoff strategy to use
        max_attempts: Total attempts including the first (1-10)
        base_delay_seconds: Delay before the first retry
        max_delay_seconds: Cap applied before jitter
        jitter_factor: Random jitter factor (0.0-1.0)
        backoff_multiplier: Multiplier for exponential backoff
    """

    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF
    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_seconds: float = Field(default=1.0, ge=0, le=600)
    max_delay_seconds: float = Field(default=30.0, ge=0, le=3600)
    jitter_factor: float = Field(default=0.2, ge=0.0, le=1.0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "RetryPolicy":
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        return self

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
        )

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay before retry number ``attempt``.

        Args:
            attempt: Retry number, 0 for the first retry

        Returns:
            Delay in seconds with jitter applied
        """
        if self.strategy == RetryStrategy.EXPONENTIAL_BACKOFF:
            delay = self.base_delay_seconds * (self.backoff_multiplier**attempt)
        elif self.strategy == RetryStrategy.FIXED_DELAY:
            delay = self.base_delay_seconds
        else:  # IMMEDIATE
            return 0.0

        delay = min(delay, self.max_delay_seconds)

        # Add jitter to avoid thundering herd
        if self.jitter_factor > 0 and delay > 0:
            jitter_amount = delay * self.jitter_factor
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))
        return delay


@dataclass
class RetryBudget:
    """Tracks attempts made for one connection within one pass."""

    connection_id: str
    attempts: int = 0
    failure_type: FailureType = FailureType.UNKNOWN
    total_delay_seconds: float = 0.0

    def record_failure(self, exc: BaseException) -> FailureType:
        self.attempts += 1
        self.failure_type = classify_failure(exc)
        return self.failure_type

    def can_retry(self, policy: RetryPolicy) -> bool:
        """Only transient failures are retried, up to ``max_attempts`` in total."""
        if self.failure_type != FailureType.TRANSIENT:
            return False
        return self.attempts < policy.max_attempts

    def next_delay(self, policy: RetryPolicy) -> float:
        delay = policy.calculate_delay(self.attempts - 1)
        self.total_delay_seconds += delay
        return delay


__all__ = [
    "FailureType",
    "RetryBudget",
    "RetryPolicy",
    "RetryStrategy",
    "classify_failure",
]
