"""
Strictly increasing nonce source for signed REST calls.

Kraken rejects a nonce that is not larger than the previous one for the
same API key, so the generator never repeats even when called several times
within the same millisecond.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional


class NonceGenerator:
    def __init__(self, clock_ms: Optional[Callable[[], int]] = None) -> None:
        self._clock_ms = clock_ms or (lambda: time.time_ns() // 1_000_000)
        self._last = 0
        # held only for the compare-and-assign
        self._lock = threading.Lock()

    def next(self) -> int:
        """Return wall-clock milliseconds scaled by 1000, bumped past the last value."""
        candidate = int(self._clock_ms()) * 1000
        with self._lock:
            if candidate <= self._last:
                candidate = self._last + 1
            self._last = candidate
            return candidate

    @property
    def last(self) -> int:
        return self._last
