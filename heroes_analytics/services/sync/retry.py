"""
Retry policy for per-event upload attempts.

Behavioral data (events carrying behavioral indicators) retries on the base
schedule; general interaction events wait longer between attempts.
"""

import random
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional


class DataPriority(str, Enum):
    BEHAVIORAL = "behavioral"
    GENERAL = "general"


DELAY_MULTIPLIER_BY_PRIORITY = {
    DataPriority.BEHAVIORAL: 1.0,
    DataPriority.GENERAL: 2.0,
}


def priority_for(event) -> DataPriority:
    return DataPriority.BEHAVIORAL if event.behavioral_indicators else DataPriority.GENERAL


class RetryPolicy:
    """Exponential backoff with additive jitter, bounded by an attempt cap."""

    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 30.0,
        max_delay: float = 3600.0,
        exponential_base: float = 2.0,
        jitter_ratio: float = 0.1,
        rng: Optional[random.Random] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter_ratio = jitter_ratio
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, config) -> "RetryPolicy":
        return cls(
            max_attempts=config.SYNC_MAX_ATTEMPTS,
            base_delay=config.SYNC_RETRY_BASE_DELAY_SECONDS,
            max_delay=config.SYNC_RETRY_MAX_DELAY_SECONDS,
            jitter_ratio=config.SYNC_RETRY_JITTER_RATIO
        )

    def is_exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    def delay_for(self, attempts: int, priority: DataPriority = DataPriority.BEHAVIORAL) -> float:
        """Seconds to wait after the given number of failed attempts (>= 1)."""
        delay = min(
            self.base_delay
            * DELAY_MULTIPLIER_BY_PRIORITY[DataPriority(priority)]
            * (self.exponential_base ** max(attempts - 1, 0)),
            self.max_delay
        )
        if self.jitter_ratio:
            delay += delay * self.jitter_ratio * self._rng.random()
        return delay

    def next_attempt_at(
        self,
        attempts: int,
        now: datetime,
        priority: DataPriority = DataPriority.BEHAVIORAL
    ) -> datetime:
        return now + timedelta(seconds=self.delay_for(attempts, priority))
