"""
ReconnectPolicy: per-channel exponential backoff bookkeeping.

Handles:
- Attempt counting with a hard maximum
- Delay computation (base * 2^(attempt-1))
- Terminal exhaustion until an explicit reset
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

log = logging.getLogger("krakengrid")


@dataclass
class ReconnectConfig:
    """Configuration for reconnect behavior."""
    base_delay_sec: float = 1.0
    max_attempts: int = 5
    multiplier: float = 2.0


class ReconnectPolicy:
    """
    Tracks reconnect attempts for one channel.

    next_delay() returns the wait before the next attempt, or None once
    max_attempts have been used. The count only resets on a successful open
    (reset()), so exhaustion is terminal until the caller asks to reconnect.
    """

    def __init__(
        self,
        config: Optional[ReconnectConfig] = None,
        name: str = "",
        on_exhausted: Optional[Callable[[int], None]] = None,
        log_event: Optional[Callable[..., None]] = None,
    ) -> None:
        self.config = config or ReconnectConfig()
        self.name = name
        self.attempts: int = 0
        self._exhausted = False
        self.on_exhausted = on_exhausted
        self._log_event = log_event or self._default_log

    def _default_log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        log.log(level, json.dumps({"event": event, **kwargs}))

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    def delay_for(self, attempt: int) -> float:
        return self.config.base_delay_sec * (self.config.multiplier ** (attempt - 1))

    def schedule(self) -> List[float]:
        """Full delay sequence for a fresh policy, e.g. [1, 2, 4, 8, 16]."""
        return [self.delay_for(i) for i in range(1, self.config.max_attempts + 1)]

    def next_delay(self) -> Optional[float]:
        if self.attempts >= self.config.max_attempts:
            if not self._exhausted:
                self._exhausted = True
                self._log_event(
                    "reconnect_exhausted",
                    level=logging.CRITICAL,
                    channel=self.name,
                    attempts=self.attempts,
                )
                if self.on_exhausted:
                    self.on_exhausted(self.attempts)
            return None
        self.attempts += 1
        delay = self.delay_for(self.attempts)
        self._log_event(
            "reconnect_scheduled",
            level=logging.WARNING,
            channel=self.name,
            attempt=self.attempts,
            delay_sec=delay,
        )
        return delay

    def reset(self) -> None:
        if self.attempts:
            self._log_event("reconnect_reset", channel=self.name, attempts=self.attempts)
        self.attempts = 0
        self._exhausted = False
