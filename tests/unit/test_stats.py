"""Unit tests for StatsAggregator gift, like and counter accounting."""
from datetime import datetime, timedelta, timezone

import pytest

from livefeed.ingest.dedup import EventDeduplicator
from livefeed.ingest.normalizer import EventNormalizer
from livefeed.ingest.stats import StatsAggregator
from livefeed.schemas.events import Actor, FollowEvent, GiftEvent, LikeEvent, ShareEvent, ViewerCountEvent

ACTOR = Actor(user_id="7", username="giver")
NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def gift(diamonds=1, repeat=1, streakable=False, repeat_end=False):
    return GiftEvent(
        actor=ACTOR,
        gift_id="5655",
        gift_name="Rose",
        diamond_count=diamonds,
        repeat_count=repeat,
        streakable=streakable,
        repeat_end=repeat_end,
        coins=diamonds * 2 * repeat,
        timestamp=NOW,
    )


@pytest.fixture
def aggregator():
    return StatsAggregator()


@pytest.mark.unit
class TestGiftAccounting:
    def test_non_streakable_gift_counts_immediately(self, aggregator):
        published = aggregator.apply(gift(diamonds=100, repeat=1))

        assert published is not None
        assert published.total_coins == 200
        assert aggregator.stats.total_coins == 200
        assert aggregator.stats.gifts == 1

    def test_streak_counts_only_on_end(self, aggregator):
        for repeat in (1, 2, 3, 4):
            assert aggregator.apply(gift(repeat=repeat, streakable=True)) is None
        assert aggregator.stats.total_coins == 0
        assert aggregator.stats.gifts == 0

        published = aggregator.apply(gift(repeat=5, streakable=True, repeat_end=True))
        assert published.coins == 1 * 2 * 5
        assert aggregator.stats.total_coins == 10
        assert aggregator.stats.gifts == 1

    def test_running_total_across_gifts(self, aggregator):
        aggregator.apply(gift(diamonds=5))
        published = aggregator.apply(gift(diamonds=1, repeat=3, streakable=True, repeat_end=True))
        assert published.total_coins == 10 + 6
        assert aggregator.stats.gifts == 2

    def test_same_second_streak_pair_counts_end_message_only(self):
        """A mid-streak and a streak-end message in the same second: only the end is counted."""
        normalizer = EventNormalizer(now=lambda: NOW)
        dedup = EventDeduplicator(clock=lambda: 0.0)
        aggregator = StatsAggregator()

        def raw(repeat_count, repeat_end):
            return {
                "type": "gift",
                "data": {
                    "user": {"userId": "7", "uniqueId": "giver"},
                    "giftType": 1,
                    "repeatCount": repeat_count,
                    "repeatEnd": repeat_end,
                    "gift": {"id": 5655, "name": "Rose", "diamond_count": 1},
                },
            }

        published = []
        for message in (raw(2, False), raw(2, False), raw(2, True)):
            event = normalizer.normalize(message)
            if dedup.is_duplicate(event):
                continue
            result = aggregator.apply(event)
            if result is not None:
                published.append(result)

        assert len(published) == 1
        assert published[0].repeat_end is True
        assert aggregator.stats.total_coins == 4
        assert aggregator.stats.gifts == 1


@pytest.mark.unit
class TestCounters:
    def test_likes_adopt_reported_total(self, aggregator):
        aggregator.apply(LikeEvent(actor=ACTOR, like_count=5))
        assert aggregator.stats.likes == 5
        aggregator.apply(LikeEvent(actor=ACTOR, like_count=3, total_likes=1000))
        assert aggregator.stats.likes == 1000
        aggregator.apply(LikeEvent(actor=ACTOR, like_count=2))
        assert aggregator.stats.likes == 1002

    def test_viewers_followers_shares(self, aggregator):
        aggregator.apply(ViewerCountEvent(viewer_count=50))
        aggregator.apply(ViewerCountEvent(viewer_count=42))
        aggregator.apply(FollowEvent(actor=ACTOR))
        aggregator.apply(FollowEvent(actor=ACTOR))
        aggregator.apply(ShareEvent(actor=ACTOR))

        assert aggregator.stats.viewers == 42
        assert aggregator.stats.followers == 2
        assert aggregator.stats.shares == 1

    def test_reset(self, aggregator):
        aggregator.apply(gift(diamonds=10))
        aggregator.reset()
        assert aggregator.stats.model_dump() == {
            "viewers": 0,
            "likes": 0,
            "total_coins": 0,
            "followers": 0,
            "shares": 0,
            "gifts": 0,
        }


@pytest.mark.unit
class TestSnapshot:
    def test_duration_in_whole_seconds(self, aggregator):
        snapshot = aggregator.snapshot(NOW, NOW + timedelta(seconds=90, milliseconds=700))
        assert snapshot.stream_duration == 90
        assert snapshot.stream_start_time == NOW
        assert snapshot.kind == "stats"

    def test_no_start_means_zero_duration(self, aggregator):
        assert aggregator.snapshot(None, NOW).stream_duration == 0

    def test_start_in_future_clamps_to_zero(self, aggregator):
        assert aggregator.snapshot(NOW + timedelta(seconds=5), NOW).stream_duration == 0
