"""
Retry Policies

Decides whether a failed attempt is retried, after how long, and against which
replica. Policies never see precondition or integrity failures as retryable:
only transient errors, plus a 404 from a secondary that may simply lag the
primary, are candidates.

Author: Ayodele Oladeji
Date: 2025
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from .exceptions import BlobTransferError, is_transient_error
from .models import LocationMode, StorageLocation


class RetryDefaults:
    """Retry configuration."""

    MAX_ATTEMPTS = 3
    BACKOFF = 4.0  # seconds
    MAX_BACKOFF = 90.0  # seconds
    BACKOFF_MULTIPLIER = 2.0


@dataclass
class RetryContext:
    """What the executor knows about the attempt that just failed."""

    retry_count: int
    error: BaseException
    location: StorageLocation
    next_location: StorageLocation
    location_mode: LocationMode

    @property
    def status_code(self) -> Optional[int]:
        if isinstance(self.error, BlobTransferError):
            return self.error.status_code
        return None


@dataclass
class RetryInfo:
    """A decision to retry: where, when, and with which location mode."""

    target_location: StorageLocation
    retry_interval: float
    updated_location_mode: Optional[LocationMode] = None


class RetryPolicy(ABC):
    """Base class for retry policies."""

    def __init__(self, max_attempts: int = RetryDefaults.MAX_ATTEMPTS):
        self.max_attempts = max_attempts

    @abstractmethod
    def backoff(self, retry_count: int) -> float:
        """Delay in seconds before retry number ``retry_count`` (1-based)."""

    def evaluate(self, context: RetryContext) -> Optional[RetryInfo]:
        """
        Decide whether to retry.

        Args:
            context: The failed attempt

        Returns:
            RetryInfo to retry, or None to fail the operation
        """
        if context.retry_count >= self.max_attempts:
            return None

        if self._is_secondary_lag(context):
            return RetryInfo(
                target_location=StorageLocation.PRIMARY,
                retry_interval=self.backoff(context.retry_count + 1),
                updated_location_mode=LocationMode.PRIMARY_ONLY,
            )

        if not is_transient_error(context.error):
            return None

        return RetryInfo(
            target_location=context.next_location,
            retry_interval=self.backoff(context.retry_count + 1),
        )

    @staticmethod
    def _is_secondary_lag(context: RetryContext) -> bool:
        # The secondary may not have the blob yet; only the primary can say 404
        return (
            context.status_code == 404
            and context.location == StorageLocation.SECONDARY
            and context.location_mode in (
                LocationMode.PRIMARY_THEN_SECONDARY,
                LocationMode.SECONDARY_THEN_PRIMARY,
            )
        )

    def create_instance(self) -> 'RetryPolicy':
        """Fresh policy for one logical operation."""
        return self


class ExponentialRetry(RetryPolicy):
    """Exponential backoff capped at ``max_backoff``."""

    def __init__(
        self,
        max_attempts: int = RetryDefaults.MAX_ATTEMPTS,
        backoff: float = RetryDefaults.BACKOFF,
        max_backoff: float = RetryDefaults.MAX_BACKOFF,
        multiplier: float = RetryDefaults.BACKOFF_MULTIPLIER,
    ):
        super().__init__(max_attempts)
        self.initial_backoff = backoff
        self.max_backoff = max_backoff
        self.multiplier = multiplier

    def backoff(self, retry_count: int) -> float:
        return min(self.initial_backoff * (self.multiplier ** (retry_count - 1)), self.max_backoff)

    def create_instance(self) -> 'ExponentialRetry':
        return ExponentialRetry(self.max_attempts, self.initial_backoff, self.max_backoff, self.multiplier)


class LinearRetry(RetryPolicy):
    """Fixed delay between attempts."""

    def __init__(
        self,
        max_attempts: int = RetryDefaults.MAX_ATTEMPTS,
        backoff: float = RetryDefaults.BACKOFF,
    ):
        super().__init__(max_attempts)
        self.delta_backoff = backoff

    def backoff(self, retry_count: int) -> float:
        return self.delta_backoff

    def create_instance(self) -> 'LinearRetry':
        return LinearRetry(self.max_attempts, self.delta_backoff)


class NoRetry(RetryPolicy):
    """Never retry."""

    def __init__(self):
        super().__init__(max_attempts=0)

    def backoff(self, retry_count: int) -> float:
        return 0.0

    def create_instance(self) -> 'NoRetry':
        return NoRetry()
