"""Dead-man's switch forcing completion when heartbeats stop arriving."""
from __future__ import annotations

import time
from typing import Callable


class Watchdog:
    """Wall-clock deadline armed on capture start and extended on heartbeats.

    The watchdog holds no opinion about capture state; callers pass the
    current ``capturing`` flag so evaluation stays a function of the clock and
    the session. A ``timeout`` of zero or less disables every operation.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._deadline: float | None = None

    @property
    def deadline(self) -> float | None:
        return self._deadline

    def arm(self, timeout: float) -> None:
        if timeout <= 0:
            return
        self._deadline = self._clock() + float(timeout)

    def reset(self, timeout: float, *, capturing: bool) -> None:
        if timeout <= 0 or not capturing:
            return
        self._deadline = self._clock() + float(timeout)

    def check(self, *, capturing: bool) -> bool:
        """Return ``True`` once the deadline has passed while capturing."""

        if not capturing or self._deadline is None:
            return False
        return self._clock() >= self._deadline

    def clear(self) -> None:
        self._deadline = None

    def remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())


__all__ = ["Watchdog"]
