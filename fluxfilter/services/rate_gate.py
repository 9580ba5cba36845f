from __future__ import annotations

import time
from collections.abc import Callable
from threading import Lock


class MinimumIntervalGate:
    """Process-wide checkpoint spacing outbound requests by `min_interval_seconds`.

    The lock is held through the sleep, so callers leave the gate one at a
    time. Entry order among concurrent callers follows lock acquisition and is
    not FIFO.
    """

    def __init__(
        self,
        *,
        min_interval_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._min_interval_seconds = max(0.0, min_interval_seconds)
        self._clock = clock
        self._sleep = sleep
        self._lock = Lock()
        self._last_dispatch_at: float | None = None

    @property
    def min_interval_seconds(self) -> float:
        return self._min_interval_seconds

    @property
    def last_dispatch_at(self) -> float | None:
        return self._last_dispatch_at

    def wait(self) -> float:
        with self._lock:
            waited = 0.0
            if self._last_dispatch_at is not None:
                elapsed = self._clock() - self._last_dispatch_at
                if elapsed < self._min_interval_seconds:
                    waited = self._min_interval_seconds - elapsed
                    self._sleep(waited)
            self._last_dispatch_at = self._clock()
            return waited

    def reset(self) -> None:
        with self._lock:
            self._last_dispatch_at = None
