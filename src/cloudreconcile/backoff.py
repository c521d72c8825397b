"""Exponential backoff with bounded multiplicative jitter."""

from __future__ import annotations

import math
import random
from dataclasses import dataclass

from cloudreconcile.errors import FatalConfigurationError


@dataclass(frozen=True)
class BackoffPolicy:
    """Delay schedule ``min(base_delay * growth ** attempt, max_delay)`` with jitter.

    Jitter scales the capped delay by a factor drawn uniformly from
    ``[1 - jitter_ratio, 1 + jitter_ratio]``. The jittered value is clamped to
    ``[base_delay, max_delay]``, so every delay stays inside that window.
    """

    base_delay: float = 1.0
    growth: float = 2.0
    jitter_ratio: float = 0.25
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        for name in ("base_delay", "growth", "jitter_ratio", "max_delay"):
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or isinstance(value, bool) or math.isnan(value):
                raise FatalConfigurationError(
                    f"Invalid backoff {name}: {value!r}",
                    hint="Use a non-negative number.",
                )
            if value < 0:
                raise FatalConfigurationError(
                    f"Invalid backoff {name}: {value}",
                    hint="Backoff parameters cannot be negative.",
                )
        if self.jitter_ratio > 1:
            raise FatalConfigurationError(
                f"Invalid backoff jitter_ratio: {self.jitter_ratio}",
                hint="Use a jitter ratio between 0 and 1.",
            )
        if self.max_delay < self.base_delay:
            raise FatalConfigurationError(
                f"Backoff max_delay {self.max_delay} is lower than base_delay {self.base_delay}",
                hint="Raise max_delay or lower base_delay.",
            )

    def raw_delay(self, attempt: int) -> float:
        if attempt < 0:
            raise ValueError(f"attempt must be >= 0, got {attempt}")
        try:
            delay = self.base_delay * (self.growth**attempt)
        except OverflowError:
            return self.max_delay
        if math.isinf(delay) or math.isnan(delay):
            return self.max_delay
        return min(delay, self.max_delay)

    def delay(self, attempt: int, *, rng: random.Random | None = None) -> float:
        delay = self.raw_delay(attempt)
        if self.jitter_ratio <= 0:
            return delay
        source = rng if rng is not None else random
        factor = source.uniform(1.0 - self.jitter_ratio, 1.0 + self.jitter_ratio)
        return min(max(delay * factor, self.base_delay), self.max_delay)

    def schedule(self, attempts: int) -> list[float]:
        return [self.raw_delay(attempt) for attempt in range(max(attempts, 0))]

