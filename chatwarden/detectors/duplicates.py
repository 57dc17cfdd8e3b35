from __future__ import annotations

from typing import Dict, Optional, Tuple

from chatwarden.detectors.text import normalized_signature
from chatwarden.models import DuplicateSignal, IncomingMessage
from chatwarden.utils.dates import HOUR

DUPLICATE_WINDOW_SECONDS = 24 * HOUR
DUPLICATE_PURGE_INTERVAL_SECONDS = 5 * 60
DUPLICATE_SIGNATURE_MIN_LENGTH = 8
DUPLICATE_SIGNATURE_MAX_LENGTH = 240


class DuplicateDetector:
    """
    Per-user duplicate text detector.

    Signatures are keyed by user only, so the same text posted into two
    different chats counts as a duplicate. Stale entries are swept at most
    once per purge interval rather than on every message.
    """

    def __init__(
        self,
        window_seconds: float = DUPLICATE_WINDOW_SECONDS,
        purge_interval_seconds: float = DUPLICATE_PURGE_INTERVAL_SECONDS,
    ):
        self.window_seconds = window_seconds
        self.purge_interval_seconds = purge_interval_seconds
        self._last_seen: Dict[Tuple[int, str], float] = {}
        self._last_purge_ts = 0.0

    def __len__(self) -> int:
        return len(self._last_seen)

    def check(self, user_id: int, message: IncomingMessage, now: float) -> Optional[DuplicateSignal]:
        self.purge(now)

        signature = normalized_signature(message, DUPLICATE_SIGNATURE_MIN_LENGTH, DUPLICATE_SIGNATURE_MAX_LENGTH)
        if not signature:
            return None

        key = (user_id, signature)
        previous_ts = self._last_seen.get(key)
        self._last_seen[key] = now

        if previous_ts is None or previous_ts < now - self.window_seconds:
            return None

        return DuplicateSignal(
            window_hours=int(self.window_seconds // HOUR),
            previous_ts=previous_ts,
            seconds_since_previous=max(1, int(now - previous_ts)),
            signature_length=len(signature),
        )

    def purge(self, now: float, force: bool = False) -> int:
        if not force and self._last_purge_ts > 0 and now - self._last_purge_ts < self.purge_interval_seconds:
            return 0

        min_ts = now - self.window_seconds
        stale = [key for key, ts in self._last_seen.items() if ts < min_ts]
        for key in stale:
            del self._last_seen[key]
        self._last_purge_ts = now
        return len(stale)
