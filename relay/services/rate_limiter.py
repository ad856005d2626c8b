import threading
import time
from typing import Callable

RATE_LIMIT_PURGE_THRESHOLD = 5000


class PhoneRateLimiter:
    """Fixed-window message counter per customer phone."""

    def __init__(
        self,
        window_seconds: float = 60,
        max_messages: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_seconds = window_seconds
        self.max_messages = max_messages
        self._clock = clock
        self._windows: dict[str, tuple[float, int]] = {}
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        stale = [key for key, (started, _) in self._windows.items() if now - started >= self.window_seconds]
        for key in stale:
            self._windows.pop(key, None)

    def allow(self, key: str) -> bool:
        with self._lock:
            now = self._clock()
            if len(self._windows) >= RATE_LIMIT_PURGE_THRESHOLD:
                self._purge(now)
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self.window_seconds:
                started, count = now, 0
            count += 1
            self._windows[key] = (started, count)
            return count <= self.max_messages

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
