"""
Rolling session statistics

Counters cover this process's observation window: they start at zero on
every connect, even when the stream duration carries over.
"""

from datetime import datetime
from typing import Optional

from livefeed.schemas.events import GiftEvent, LikeEvent, ViewerCountEvent
from livefeed.schemas.status import StatsAggregate, StatsSnapshot
from livefeed.utils.logging import get_logger

logger = get_logger(__name__, category="events")


class StatsAggregator:
    def __init__(self):
        self.stats = StatsAggregate()

    def reset(self) -> None:
        self.stats = StatsAggregate()

    def apply(self, event):
        """
        Update counters for ``event``.

        Returns the event to publish, or None when it should be withheld.
        Streakable gifts are only counted (and published) on the streak-end
        message, so intermediate repeats never change the totals.
        """
        if isinstance(event, GiftEvent):
            return self._apply_gift(event)

        if isinstance(event, LikeEvent):
            if event.total_likes is not None:
                self.stats.likes = event.total_likes
            else:
                self.stats.likes += event.like_count
        elif isinstance(event, ViewerCountEvent):
            self.stats.viewers = event.viewer_count
        elif event.type == "follow":
            self.stats.followers += 1
        elif event.type == "share":
            self.stats.shares += 1
        return event

    def _apply_gift(self, event: GiftEvent) -> Optional[GiftEvent]:
        if event.streakable and not event.repeat_end:
            logger.debug(
                f"Gift streak in progress: {event.gift_name or 'Unknown Gift'} "
                f"x{event.repeat_count} (not counted yet)"
            )
            return None

        self.stats.total_coins += event.coins
        self.stats.gifts += 1
        logger.debug(
            f"Gift counted: {event.gift_name} diamonds={event.diamond_count} "
            f"repeat={event.repeat_count} coins={event.coins} total={self.stats.total_coins}"
        )
        return event.model_copy(update={"total_coins": self.stats.total_coins})

    def snapshot(self, start: Optional[datetime], now: datetime) -> StatsSnapshot:
        duration = 0
        if start is not None:
            duration = max(int((now - start).total_seconds()), 0)
        return StatsSnapshot(
            **self.stats.model_dump(),
            stream_duration=duration,
            stream_start_time=start,
            timestamp=now,
        )
