"""In-memory guard against provider retries of the same message ID."""

import threading
import time
from collections import OrderedDict
from typing import Callable

from relay.logging_config import get_logger

logger = get_logger("idempotency")


class IdempotencyGuard:
    """Bounded, time-expiring set of processed provider message IDs.

    Process-local and best-effort: a restart forgets everything. The unique
    constraint on ``messages.provider_message_id`` stays the authoritative
    guard.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600,
        max_entries: int = 50000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._seen: "OrderedDict[str, float]" = OrderedDict()
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        # Entries are kept in insertion order, so expired ones sit at the front.
        while self._seen:
            key, marked_at = next(iter(self._seen.items()))
            if now - marked_at < self.ttl_seconds:
                break
            self._seen.popitem(last=False)
        while len(self._seen) > self.max_entries:
            self._seen.popitem(last=False)

    def has_been_processed(self, provider_message_id: str) -> bool:
        with self._lock:
            now = self._clock()
            self._purge(now)
            return provider_message_id in self._seen

    def mark_processed(self, provider_message_id: str) -> None:
        with self._lock:
            now = self._clock()
            self._seen.pop(provider_message_id, None)
            self._seen[provider_message_id] = now
            self._purge(now)

    def check_and_mark(self, provider_message_id: str) -> bool:
        """Atomically mark the ID; True only for the first caller inside the window."""
        with self._lock:
            now = self._clock()
            self._purge(now)
            if provider_message_id in self._seen:
                return False
            self._seen[provider_message_id] = now
            if len(self._seen) > self.max_entries:
                self._seen.popitem(last=False)
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
