from __future__ import annotations

from typing import Dict, Tuple

DEFAULT_TTL_SECONDS = 60 * 60
GC_SIZE_THRESHOLD = 5000


class InMemoryIdempotencyGuard:
    """Fast in-process (chat_id, message_id) dedup with TTL, consulted before the durable table."""

    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, gc_threshold: int = GC_SIZE_THRESHOLD):
        self.ttl_seconds = ttl_seconds
        self.gc_threshold = gc_threshold
        self._seen: Dict[Tuple[int, int], float] = {}

    def __len__(self) -> int:
        return len(self._seen)

    def try_mark(self, chat_id: int, message_id: int, now: float) -> bool:
        """Return True the first time a message is seen within the TTL."""
        self.gc(now)

        key = (chat_id, message_id)
        expires_at = self._seen.get(key)
        if expires_at is not None and expires_at > now:
            return False

        self._seen[key] = now + self.ttl_seconds
        return True

    def gc(self, now: float) -> int:
        """Sweep expired entries, only once the map has grown past the threshold."""
        if len(self._seen) < self.gc_threshold:
            return 0
        expired = [key for key, expires_at in self._seen.items() if expires_at <= now]
        for key in expired:
            del self._seen[key]
        return len(expired)
