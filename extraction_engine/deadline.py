from __future__ import annotations

import time
from typing import Callable


class Deadline:
    """Wall-clock budget for one invocation.

    ``soft_sec`` is the point after which no new remote page is fetched.
    ``hard_sec`` bounds the best-effort drain of a page already in hand.
    Both must stay below the caller's own execution limit.
    """

    def __init__(self, soft_sec: float, hard_sec: float | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self.soft_sec = soft_sec
        self.hard_sec = max(hard_sec if hard_sec is not None else soft_sec, soft_sec)
        self._clock = clock
        self._started = clock()

    def elapsed(self) -> float:
        return self._clock() - self._started

    def elapsed_ms(self) -> int:
        return int(self.elapsed() * 1000)

    def remaining(self) -> float:
        return max(self.soft_sec - self.elapsed(), 0.0)

    def expired(self) -> bool:
        return self.elapsed() >= self.soft_sec

    def hard_expired(self) -> bool:
        return self.elapsed() >= self.hard_sec
