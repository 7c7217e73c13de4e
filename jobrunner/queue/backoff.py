"""
Retry backoff policy.
"""

import random
from dataclasses import dataclass

from jobrunner.config import Settings

# 2**63 seconds is far past any sensible cap
_MAX_EXPONENT = 63


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential backoff with multiplicative jitter, capped.

    delay(k) = min(cap, base * 2**k * (1 + U[0, jitter)))

    Jitter only stretches a delay upward and stays below 1, so a delay
    never reaches the next step's floor: delays are non-decreasing in k
    and never exceed the cap.
    """

    base_seconds: float = 1.0
    max_seconds: float = 300.0
    jitter: float = 0.25

    def __post_init__(self) -> None:
        if self.base_seconds <= 0:
            raise ValueError("base_seconds must be positive")
        if self.max_seconds < self.base_seconds:
            raise ValueError("max_seconds must be >= base_seconds")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            base_seconds=settings.backoff_base_seconds,
            max_seconds=settings.backoff_max_seconds,
            jitter=settings.backoff_jitter,
        )

    def delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """
        Seconds to wait before the retry that follows attempt `attempt`.

        Args:
            attempt: Number of attempts made so far.
            rng: Optional random source, for reproducible jitter.

        Returns:
            Delay in seconds.
        """
        exponent = min(max(attempt, 0), _MAX_EXPONENT)
        raw = self.base_seconds * (2 ** exponent)
        if raw >= self.max_seconds:
            return self.max_seconds
        spread = (rng or random).random() * self.jitter
        return min(self.max_seconds, raw * (1 + spread))
