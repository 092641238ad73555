"""
Backoff and delay calculation utilities.

Shared by:
- CaptchaRecovery wait path (escalating wait tiers)
- TaskQueueScheduler idle waits and cooldowns (uniform random delays)
"""

from __future__ import annotations

import random
from collections.abc import Sequence
from dataclasses import dataclass, field

DEFAULT_RETRY_DELAYS_MINUTES: tuple[float, ...] = (5, 15, 30, 60)


@dataclass(frozen=True)
class TieredBackoff:
    """Escalating wait table whose last tier repeats indefinitely.

    Example:
        >>> backoff = TieredBackoff()
        >>> [backoff.delay_minutes(n) for n in range(6)]
        [5, 15, 30, 60, 60, 60]
    """

    tiers_minutes: tuple[float, ...] = field(default=DEFAULT_RETRY_DELAYS_MINUTES)

    def __post_init__(self) -> None:
        """Validate configuration."""
        if not self.tiers_minutes:
            raise ValueError("tiers_minutes must not be empty")
        if any(t <= 0 for t in self.tiers_minutes):
            raise ValueError("tiers_minutes must be positive")

    @classmethod
    def from_minutes(cls, tiers: Sequence[float]) -> TieredBackoff:
        return cls(tiers_minutes=tuple(tiers))

    def tier_index(self, attempt: int) -> int:
        """Clamp an attempt count to a valid tier index."""
        if attempt < 0:
            raise ValueError("attempt must be non-negative")
        return min(attempt, len(self.tiers_minutes) - 1)

    def delay_minutes(self, attempt: int) -> float:
        """Get the wait in minutes for the given number of prior waits."""
        return self.tiers_minutes[self.tier_index(attempt)]


def random_delay_ms(min_ms: int, max_ms: int) -> int:
    """Pick a uniformly random integer delay in [min_ms, max_ms].

    Bounds given in the wrong order are swapped; negative bounds clamp to 0.

    Example:
        >>> 2000 <= random_delay_ms(2000, 4000) <= 4000
        True
    """
    low, high = sorted((max(0, int(min_ms)), max(0, int(max_ms))))
    return random.randint(low, high)
