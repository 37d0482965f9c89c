"""
Exponential backoff with proportional jitter.
"""

import random
from typing import Optional

from ..config import RetrySettings


class BackoffPolicy:
    """Computes the delay before each retry of a failed batch."""

    def __init__(self, settings: RetrySettings, rng: Optional[random.Random] = None) -> None:
        self.settings = settings
        self._rng = rng or random.Random()

    @property
    def max_attempts(self) -> int:
        return self.settings.max_attempts

    def base_delay(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based), before jitter."""
        s = self.settings
        delay = s.initial_backoff_seconds * (s.backoff_multiplier ** max(0, attempt - 1))
        return min(delay, s.max_backoff_seconds)

    def delay(self, attempt: int) -> float:
        base = self.base_delay(attempt)
        jitter = self.settings.jitter
        if jitter <= 0 or base <= 0:
            return base
        return max(0.0, base * (1 + self._rng.uniform(-jitter, jitter)))
