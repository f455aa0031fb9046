"""
Rate limiting for repeated error logs.

A broker outage makes every tick fail the same way; only one log line per
window is emitted and the number of swallowed lines is reported with it.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

ERROR_LOG_WINDOW_S = 10.0


class ErrorRateLimiter:
    def __init__(
        self,
        log: logging.Logger,
        window_s: float = ERROR_LOG_WINDOW_S,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.log = log
        self.window_s = window_s
        self._clock = clock
        self._lock = threading.Lock()
        self._last_ts: float | None = None
        self._dropped = 0

    def _should_log(self) -> bool:
        with self._lock:
            now = self._clock()
            if self._last_ts is not None and now - self._last_ts < self.window_s:
                self._dropped += 1
                return False
            self._last_ts = now
            return True

    def error(self, msg: str, *args: Any) -> bool:
        """Log msg at ERROR if the window allows it. Returns whether it was logged."""
        if not self._should_log():
            return False
        dropped, self._dropped = self._dropped, 0
        if dropped:
            self.log.error(msg + " (%d similar suppressed)", *args, dropped)
        else:
            self.log.error(msg, *args)
        return True

    def reset(self) -> None:
        with self._lock:
            self._last_ts = None
            self._dropped = 0
