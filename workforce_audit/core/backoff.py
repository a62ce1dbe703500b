from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator


@dataclass(frozen=True)
class Backoff:
    """Exponential reconnect delays: initial, initial*factor, ... capped at maximum."""

    initial_seconds: float = 1.0
    maximum_seconds: float = 30.0
    factor: float = 2.0

    def delays(self) -> Iterator[float]:
        delay = self.initial_seconds
        while True:
            yield delay
            delay = min(delay * self.factor, self.maximum_seconds)
