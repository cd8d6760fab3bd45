"""Exponential backoff with jitter for retry scheduling."""

import math
import random
from dataclasses import dataclass, field

from payrelay.common.config import settings


@dataclass
class BackoffPolicy:
    """Compute retry delays as `min(initial * multiplier**n, max)` +/- jitter.

    Pass a seeded `random.Random` as `rng` for deterministic delays.
    """

    initial_delay_ms: int = 1000
    multiplier: float = 2.0
    max_delay_ms: int = 300_000
    jitter_factor: float = 0.1
    rng: random.Random = field(default_factory=random.Random)

    def base_delay_ms(self, retry_count: int) -> float:
        # Exponent capped: multiplier**n overflows float for large n.
        if self.multiplier > 1 and self.initial_delay_ms > 0:
            limit = math.log(max(self.max_delay_ms, 1) / self.initial_delay_ms, self.multiplier) + 1
            retry_count = min(retry_count, max(0, math.ceil(limit)))
        return min(self.initial_delay_ms * self.multiplier**retry_count, self.max_delay_ms)

    def delay_ms(self, retry_count: int) -> int:
        capped = self.base_delay_ms(retry_count)
        jitter = capped * self.jitter_factor * (self.rng.random() * 2 - 1)
        return max(0, math.floor(capped + jitter))

    @classmethod
    def from_settings(cls, rng: random.Random | None = None) -> "BackoffPolicy":
        return cls(
            initial_delay_ms=settings.retry_initial_delay_ms,
            multiplier=settings.retry_backoff_multiplier,
            max_delay_ms=settings.retry_max_delay_ms,
            jitter_factor=settings.retry_jitter_factor,
            rng=rng or random.Random(),
        )
