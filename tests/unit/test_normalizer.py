"""Unit tests for EventNormalizer."""
from datetime import datetime, timezone

import pytest

from livefeed.ingest.normalizer import EventNormalizer, parse_upstream_timestamp
from livefeed.schemas.events import (
    ChatEvent,
    FollowEvent,
    GiftEvent,
    LikeEvent,
    RoomInfoUpdate,
    ShareEvent,
    StreamEnded,
    SubscribeEvent,
    ViewerCountEvent,
)

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

USER = {
    "userId": "42",
    "uniqueId": "viewer42",
    "nickname": "Viewer 42",
    "profilePictureUrl": "https://cdn.test/42.jpg",
}


@pytest.fixture
def normalizer():
    return EventNormalizer(now=lambda: NOW)


@pytest.mark.unit
class TestEventNormalizer:
    def test_chat_with_nested_user(self, normalizer):
        event = normalizer.normalize({"type": "chat", "data": {"user": USER, "comment": "hi there"}})

        assert isinstance(event, ChatEvent)
        assert event.message == "hi there"
        assert event.actor.user_id == "42"
        assert event.actor.username == "viewer42"
        assert event.actor.nickname == "Viewer 42"
        assert event.timestamp == NOW
        assert event.upstream_timestamp is False

    def test_chat_with_flat_user_fields(self, normalizer):
        event = normalizer.normalize({"type": "WebcastChatMessage", "data": {"uniqueId": "flat", "comment": "x"}})
        assert isinstance(event, ChatEvent)
        assert event.actor.username == "flat"

    @pytest.mark.parametrize(
        "identity,user_extra,expected",
        [
            ({"isModeratorOfAnchor": True}, {"fansClub": {"data": {"level": 7}}}, 10),
            ({}, {"fansClub": {"data": {"level": 7}}}, 7),
            ({"isSubscriberOfAnchor": True}, {}, 1),
            ({}, {}, 0),
        ],
    )
    def test_chat_team_member_level(self, normalizer, identity, user_extra, expected):
        raw = {"type": "chat", "data": {"user": {**USER, **user_extra}, "comment": "x", "userIdentity": identity}}
        event = normalizer.normalize(raw)
        assert event.team_member_level == expected

    def test_gift_coins_and_streak_flags(self, normalizer):
        raw = {
            "type": "gift",
            "data": {
                "user": USER,
                "giftId": 5655,
                "repeatCount": 3,
                "repeatEnd": True,
                "giftType": 1,
                "gift": {"name": "Rose", "diamond_count": 1, "image": {"url_list": ["https://cdn.test/rose.png"]}},
            },
        }
        event = normalizer.normalize(raw)

        assert isinstance(event, GiftEvent)
        assert event.gift_name == "Rose"
        assert event.gift_picture_url == "https://cdn.test/rose.png"
        assert event.streakable is True
        assert event.repeat_end is True
        assert event.coins == 1 * 2 * 3

    def test_gift_defaults_to_single_non_streakable(self, normalizer):
        event = normalizer.normalize({"type": "gift", "data": {"user": USER, "gift": {"id": 1, "diamondCount": 100}}})
        assert event.repeat_count == 1
        assert event.streakable is False
        assert event.coins == 200
        assert event.gift_id == "1"

    def test_like_prefers_reported_total(self, normalizer):
        event = normalizer.normalize({"type": "like", "data": {"user": USER, "likeCount": 15, "totalLikeCount": 1200}})
        assert isinstance(event, LikeEvent)
        assert event.like_count == 15
        assert event.total_likes == 1200

    def test_like_without_count_defaults_to_one(self, normalizer):
        event = normalizer.normalize({"type": "like", "data": {"user": USER}})
        assert event.like_count == 1
        assert event.total_likes is None

    def test_viewer_count(self, normalizer):
        event = normalizer.normalize({"type": "roomUser", "data": {"viewerCount": 321}})
        assert isinstance(event, ViewerCountEvent)
        assert event.viewer_count == 321

    def test_social_message_maps_by_display_type(self, normalizer):
        follow = normalizer.normalize({"type": "social", "data": {"user": USER, "displayType": "pm_main_follow_message_viewer_2"}})
        share = normalizer.normalize({"type": "social", "data": {"user": USER, "displayType": "pm_mt_guidance_share"}})
        assert isinstance(follow, FollowEvent)
        assert isinstance(share, ShareEvent)

    def test_follow_share_subscribe(self, normalizer):
        assert isinstance(normalizer.normalize({"type": "follow", "data": {"user": USER}}), FollowEvent)
        assert isinstance(normalizer.normalize({"type": "share", "data": {"user": USER}}), ShareEvent)
        assert isinstance(normalizer.normalize({"type": "subscribe", "data": {"user": USER}}), SubscribeEvent)

    def test_room_info_is_not_a_live_event(self, normalizer):
        result = normalizer.normalize({"type": "roomInfo", "data": {"roomInfo": {"create_time": 1714560000}}})
        assert isinstance(result, RoomInfoUpdate)
        assert result.room_info == {"create_time": 1714560000}

    def test_stream_end_signals(self, normalizer):
        assert isinstance(normalizer.normalize({"type": "streamEnd", "data": {}}), StreamEnded)
        assert isinstance(normalizer.normalize({"type": "WebcastControlMessage", "data": {"action": 3}}), StreamEnded)
        assert normalizer.normalize({"type": "control", "data": {"action": 1}}) is None

    def test_upstream_timestamp_is_used(self, normalizer):
        event = normalizer.normalize({"type": "chat", "data": {"user": USER, "comment": "x", "createTime": "1714564800000"}})
        assert event.upstream_timestamp is True
        assert event.timestamp == datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    def test_unknown_and_malformed_messages_are_ignored(self, normalizer):
        assert normalizer.normalize({"type": "WebcastPollMessage", "data": {}}) is None
        assert normalizer.normalize("not a dict") is None
        assert normalizer.normalize({"data": {}}) is None


@pytest.mark.unit
class TestParseUpstreamTimestamp:
    @pytest.mark.parametrize(
        "value",
        [1714564800, 1714564800000, "1714564800", "1714564800000", 1714564800.0],
    )
    def test_seconds_and_milliseconds(self, value):
        assert parse_upstream_timestamp(value) == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("value", [None, "", "abc", 0, -5, True])
    def test_invalid_values(self, value):
        assert parse_upstream_timestamp(value) is None
