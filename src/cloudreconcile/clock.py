"""Time source and deadline bookkeeping shared by the retry and poll loops."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Protocol


class Clock(Protocol):
    def monotonic(self) -> float: ...

    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


SYSTEM_CLOCK: Clock = SystemClock()


@dataclass
class Deadline:
    """Cooperative budget measured from construction time."""

    timeout: float
    clock: Clock = SYSTEM_CLOCK
    started_at: float = field(init=False)

    def __post_init__(self) -> None:
        self.started_at = self.clock.monotonic()

    def elapsed(self) -> float:
        return self.clock.monotonic() - self.started_at

    def remaining(self) -> float:
        return max(0.0, self.timeout - self.elapsed())

    def allows(self, delay: float) -> bool:
        return self.elapsed() + delay <= self.timeout
