"""Tick sources for the release scheduler."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import math
import time
from typing import Protocol


class TickSource(Protocol):
    def now(self) -> int:
        ...

    def tick(self) -> int:
        ...


@dataclass
class SimulatedClock:
    """Caller-stepped clock; every scheduling pass advances it by one."""

    start: int = 0
    _value: int = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.start < 0:
            raise ValueError("start must be >= 0")
        self._value = self.start

    def now(self) -> int:
        return self._value

    def tick(self) -> int:
        self._value += 1
        return self._value

    def advance(self, steps: int = 1) -> int:
        if steps < 0:
            raise ValueError("steps must be >= 0")
        self._value += steps
        return self._value


@dataclass
class ElapsedTickClock:
    """Derives tick values from elapsed real time, one tick per interval."""

    interval_seconds: float
    time_fn: Callable[[], float] = time.monotonic
    _origin: float = field(init=False, repr=False)
    _last: int = field(init=False, repr=False, default=0)

    def __post_init__(self) -> None:
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._origin = self.time_fn()

    def now(self) -> int:
        elapsed = max(0.0, self.time_fn() - self._origin)
        # Never report a value below one already handed out.
        self._last = max(self._last, int(math.floor(elapsed / self.interval_seconds)))
        return self._last

    def tick(self) -> int:
        return self.now()

    def seconds_until_next_tick(self) -> float:
        elapsed = max(0.0, self.time_fn() - self._origin)
        next_boundary = (math.floor(elapsed / self.interval_seconds) + 1) * self.interval_seconds
        return max(0.0, next_boundary - elapsed)
