"""Exponential reconnect backoff with jitter."""

import random
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class BackoffPolicy:
    """Delay schedule for reconnection attempts.

    Attempt ``n`` (0-based) waits ``min(cap, base * 2**n)`` scaled by a random
    factor in ``[1 - jitter, 1 + jitter]``. ``max_attempts`` of None retries
    forever.
    """
    base: float = 1.0
    cap: float = 30.0
    jitter: float = 0.2
    max_attempts: Optional[int] = 8
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self):
        if self.base <= 0 or self.cap < self.base:
            raise ValueError("backoff requires 0 < base <= cap")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")

    def raw_delay(self, attempt: int) -> float:
        # Clamp the exponent so huge attempt counts do not overflow
        return min(self.cap, self.base * (2 ** min(attempt, 32)))

    def delay(self, attempt: int) -> float:
        factor = 1.0 + self.rng.uniform(-self.jitter, self.jitter)
        return self.raw_delay(attempt) * factor

    def exhausted(self, attempt: int) -> bool:
        """True once ``attempt`` attempts have been made and none are left."""
        return self.max_attempts is not None and attempt >= self.max_attempts
