"""
Stream start time inference

Elapsed-duration displays need to know when the broadcast began, not when
this process connected. Sources, most trusted first:

1. an explicit start field in room metadata (plausibility-checked)
2. the earliest upstream event timestamp seen this session
3. the wall-clock connection time

The chosen value is kept per handle so reconnecting to the same broadcast
does not reset the duration.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from livefeed.ingest.normalizer import parse_upstream_timestamp
from livefeed.utils.logging import get_logger

logger = get_logger(__name__, category="connection")

# Nothing on the platform predates this
PLAUSIBILITY_FLOOR = datetime(2020, 1, 1, tzinfo=timezone.utc)

START_TIME_FIELDS = (
    "start_time",
    "startTime",
    "stream_start_time",
    "streamStartTime",
    "create_time",
    "createTime",
)


class StartTimeSource(str, Enum):
    METADATA = "metadata"
    EARLIEST_EVENT = "earliest_event"
    CONNECTION_TIME = "connection_time"
    RESTORED = "restored"


def is_plausible(value: datetime, now: datetime) -> bool:
    return PLAUSIBILITY_FLOOR <= value <= now


class StreamStartTracker:
    def __init__(self):
        self.handle: Optional[str] = None
        self.start_time: Optional[datetime] = None
        self.source: Optional[StartTimeSource] = None
        self.earliest_event_time: Optional[datetime] = None
        self._persisted: Dict[str, datetime] = {}

    @staticmethod
    def extract_from_metadata(room_info: Optional[Dict[str, Any]], now: datetime) -> Optional[datetime]:
        """Start time from room metadata, or None if absent or implausible."""
        if not isinstance(room_info, dict):
            return None

        scopes = [room_info]
        if isinstance(room_info.get("room"), dict):
            scopes.append(room_info["room"])

        for scope in scopes:
            for field in START_TIME_FIELDS:
                value = parse_upstream_timestamp(scope.get(field))
                if value is None:
                    continue
                if is_plausible(value, now):
                    logger.debug(f"Stream start from metadata field {field}: {value.isoformat()}")
                    return value
                logger.warning(f"Ignoring implausible {field} in room metadata: {value.isoformat()}")

        duration = room_info.get("duration")
        if isinstance(duration, (int, float)) and not isinstance(duration, bool) and duration > 0:
            value = now - timedelta(seconds=duration)
            if is_plausible(value, now):
                return value

        return None

    def begin(
        self,
        handle: str,
        room_info: Optional[Dict[str, Any]],
        now: datetime,
        restore: bool,
    ) -> datetime:
        """Pick the start time for a freshly opened session."""
        self.handle = handle
        self.earliest_event_time = None

        from_metadata = self.extract_from_metadata(room_info, now)
        restored = self.restore(handle) if restore else None

        if from_metadata is not None:
            self.start_time, self.source = from_metadata, StartTimeSource.METADATA
        elif restored is not None:
            self.start_time, self.source = restored, StartTimeSource.RESTORED
        else:
            self.start_time, self.source = now, StartTimeSource.CONNECTION_TIME

        logger.info(
            f"Stream start for @{handle}: {self.start_time.isoformat()} (source: {self.source.value})"
        )
        self.persist()
        return self.start_time

    def observe_event(self, timestamp: datetime) -> bool:
        """
        Track the earliest upstream event time.

        Returns True when it moved the start time earlier. Metadata-derived
        start times are never overridden by event times.
        """
        if self.earliest_event_time is None or timestamp < self.earliest_event_time:
            self.earliest_event_time = timestamp

        if self.start_time is None or self.source == StartTimeSource.METADATA:
            return False
        if timestamp >= self.start_time or timestamp < PLAUSIBILITY_FLOOR:
            return False

        logger.info(
            f"Correcting stream start from {self.start_time.isoformat()} to "
            f"{timestamp.isoformat()} (earliest event)"
        )
        self.start_time, self.source = timestamp, StartTimeSource.EARLIEST_EVENT
        self.persist()
        return True

    def apply_metadata(self, room_info: Optional[Dict[str, Any]], now: datetime) -> bool:
        """Adopt a metadata start time received mid-session. Returns True if it changed."""
        value = self.extract_from_metadata(room_info, now)
        if value is None or value == self.start_time:
            return False
        self.start_time, self.source = value, StartTimeSource.METADATA
        self.persist()
        return True

    def persist(self) -> None:
        if self.handle and self.start_time is not None:
            self._persisted[self.handle] = self.start_time

    def restore(self, handle: str) -> Optional[datetime]:
        return self._persisted.get(handle)

    def forget(self, handle: Optional[str] = None) -> None:
        """Drop the persisted start for ``handle`` (or the current one) and reset."""
        target = handle or self.handle
        if target:
            self._persisted.pop(target, None)
        if target == self.handle:
            self.reset()

    def reset(self) -> None:
        self.start_time = None
        self.source = None
        self.earliest_event_time = None
