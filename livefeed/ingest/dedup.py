"""
Event deduplication

The platform occasionally redelivers the same message, and reconnects can
replay a short backlog. Fingerprints of recently published events are kept
for a fixed TTL in a bounded, insertion-ordered map.
"""

import hashlib
import time
from collections import OrderedDict
from typing import Callable, Dict, Tuple

from livefeed.schemas.events import PLATFORM_EVENT_TYPES
from livefeed.utils.logging import get_logger

logger = get_logger(__name__, category="events")

# Content fields that distinguish two events of the same type from one user
_DISCRIMINATING_FIELDS: Dict[str, Tuple[str, ...]] = {
    "chat": ("message",),
    "gift": ("gift_id", "gift_name", "repeat_count", "repeat_end"),
    "like": ("like_count", "total_likes"),
    "viewerCount": ("viewer_count",),
}


class EventDeduplicator:
    def __init__(
        self,
        ttl_seconds: float = 60.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._seen: "OrderedDict[str, float]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._seen)

    @staticmethod
    def fingerprint(event) -> str:
        """Stable hash of type, subject, discriminating content and the 1s time bucket."""
        actor = getattr(event, "actor", None)
        parts = [
            event.type,
            (actor.user_id if actor else None) or "",
            (actor.username if actor else None) or "",
        ]
        for field in _DISCRIMINATING_FIELDS.get(event.type, ()):
            parts.append(f"{field}={getattr(event, field, None)}")
        parts.append(str(int(event.timestamp.timestamp())))
        return hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()

    def _purge(self, now: float) -> None:
        while self._seen:
            key, seen_at = next(iter(self._seen.items()))
            if now - seen_at < self.ttl_seconds:
                break
            self._seen.popitem(last=False)

    def is_duplicate(self, event) -> bool:
        """True if an identical event was seen within the TTL; records the event otherwise."""
        if event.type not in PLATFORM_EVENT_TYPES:
            return False

        now = self._clock()
        key = self.fingerprint(event)

        seen_at = self._seen.get(key)
        if seen_at is not None and now - seen_at < self.ttl_seconds:
            logger.debug(f"Dropping duplicate {event.type} event ({key[:12]})")
            return True

        self._purge(now)
        self._seen.pop(key, None)
        self._seen[key] = now
        while len(self._seen) > self.max_entries:
            self._seen.popitem(last=False)
        return False

    def clear(self) -> None:
        self._seen.clear()
