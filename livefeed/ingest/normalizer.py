"""
Raw platform message -> canonical event

This is the only place that probes alternate field names; the platform
renames fields between releases and different relays use different
casings. Everything past this boundary reads typed pydantic fields.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

from pydantic import ValidationError

from livefeed.schemas.events import (
    Actor,
    ChatEvent,
    FollowEvent,
    GiftEvent,
    LikeEvent,
    RoomInfoUpdate,
    ShareEvent,
    StreamEnded,
    SubscribeEvent,
    ViewerCountEvent,
    utc_now,
)
from livefeed.utils.logging import get_logger

logger = get_logger(__name__, category="events")

NormalizedMessage = Union[
    ChatEvent,
    GiftEvent,
    FollowEvent,
    ShareEvent,
    SubscribeEvent,
    LikeEvent,
    ViewerCountEvent,
    RoomInfoUpdate,
    StreamEnded,
]

# Upstream message type -> canonical kind
TYPE_ALIASES = {
    "chat": "chat",
    "WebcastChatMessage": "chat",
    "gift": "gift",
    "WebcastGiftMessage": "gift",
    "follow": "follow",
    "share": "share",
    "social": "social",
    "WebcastSocialMessage": "social",
    "like": "like",
    "WebcastLikeMessage": "like",
    "subscribe": "subscribe",
    "WebcastSubNotifyMessage": "subscribe",
    "roomUser": "viewerCount",
    "viewerCount": "viewerCount",
    "WebcastRoomUserSeqMessage": "viewerCount",
    "roomInfo": "roomInfo",
    "WebcastRoomMessage": "roomInfo",
    "streamEnd": "streamEnd",
    "WebcastControlMessage": "control",
    "control": "control",
}

# Control message action that means the broadcaster ended the stream
CONTROL_ACTION_STREAM_END = 3

# Gift type that can be sent repeatedly as one streak
STREAKABLE_GIFT_TYPE = 1

MODERATOR_TEAM_LEVEL = 10
SUBSCRIBER_TEAM_LEVEL = 1

LIKE_TOTAL_FIELDS = ("totalLikes", "total_like_count", "totalLikeCount", "total", "total_likes")


def first_of(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """First present, non-empty value among keys."""
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return default


def to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_upstream_timestamp(value: Any) -> Optional[datetime]:
    """Epoch seconds or milliseconds (number or numeric string) to aware UTC."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number <= 0:
        return None
    if number >= 1e12:
        number /= 1000.0
    try:
        return datetime.fromtimestamp(number, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


class EventNormalizer:
    """Maps raw ``{"type": ..., "data": {...}}`` messages onto event models."""

    def __init__(self, now: Callable[[], datetime] = utc_now):
        self._now = now
        self._handlers = {
            "chat": self._chat,
            "gift": self._gift,
            "follow": self._follow,
            "share": self._share,
            "social": self._social,
            "like": self._like,
            "subscribe": self._subscribe,
            "viewerCount": self._viewer_count,
            "roomInfo": self._room_info,
            "streamEnd": self._stream_end,
            "control": self._control,
        }

    def normalize(self, raw: Dict[str, Any]) -> Optional[NormalizedMessage]:
        """Return the canonical model for ``raw``, or None for unknown/ignored messages."""
        if not isinstance(raw, dict):
            logger.debug(f"Ignoring non-object message: {type(raw).__name__}")
            return None

        raw_type = raw.get("type") or raw.get("event")
        kind = TYPE_ALIASES.get(raw_type)
        if kind is None:
            logger.debug(f"Ignoring unsupported message type: {raw_type}")
            return None

        data = raw.get("data")
        if not isinstance(data, dict):
            data = {k: v for k, v in raw.items() if k not in ("type", "event")}

        try:
            return self._handlers[kind](data)
        except ValidationError as e:
            logger.warning(f"Dropping malformed {raw_type} message: {e.error_count()} validation error(s)")
            return None

    def _timestamp(self, data: Dict[str, Any]) -> Dict[str, Any]:
        common = data.get("common") if isinstance(data.get("common"), dict) else {}
        parsed = parse_upstream_timestamp(
            first_of(data, "createTime", "create_time", "timestamp")
            or first_of(common, "createTime", "create_time")
        )
        if parsed is None:
            return {"timestamp": self._now(), "upstream_timestamp": False}
        return {"timestamp": parsed, "upstream_timestamp": True}

    @staticmethod
    def _actor(data: Dict[str, Any]) -> Actor:
        user = data.get("user") if isinstance(data.get("user"), dict) else data
        user_id = first_of(user, "userId", "id", "user_id")
        actor = Actor(
            user_id=str(user_id) if user_id is not None else None,
            username=first_of(user, "uniqueId", "username", "unique_id"),
            nickname=first_of(user, "nickname", "displayName"),
            profile_picture_url=first_of(user, "profilePictureUrl", "profilePicture"),
        )
        if not actor.username and not actor.nickname:
            logger.debug(f"No user identity in message; keys: {list(data.keys())[:10]}")
        return actor

    def _chat(self, data: Dict[str, Any]) -> ChatEvent:
        identity = data.get("userIdentity") or {}
        is_moderator = bool(identity.get("isModeratorOfAnchor") or data.get("isModerator"))
        is_subscriber = bool(identity.get("isSubscriberOfAnchor") or data.get("isSubscriber"))

        user = data.get("user") if isinstance(data.get("user"), dict) else {}
        fan_club_level = to_int(((user.get("fansClub") or {}).get("data") or {}).get("level"))

        if is_moderator:
            team_level = MODERATOR_TEAM_LEVEL
        elif fan_club_level:
            team_level = fan_club_level
        elif is_subscriber:
            team_level = SUBSCRIBER_TEAM_LEVEL
        else:
            team_level = 0

        return ChatEvent(
            actor=self._actor(data),
            message=str(first_of(data, "comment", "message", "content", default="")),
            is_moderator=is_moderator,
            is_subscriber=is_subscriber,
            team_member_level=team_level,
            **self._timestamp(data),
        )

    def _gift(self, data: Dict[str, Any]) -> GiftEvent:
        gift = data.get("gift") if isinstance(data.get("gift"), dict) else data
        image = gift.get("image") if isinstance(gift.get("image"), dict) else {}
        url_list = image.get("url_list") or image.get("urlList") or []

        gift_id = first_of(gift, "id", "giftId", "gift_id") or first_of(data, "giftId", "gift_id")
        diamond_count = to_int(first_of(gift, "diamond_count", "diamondCount", "diamonds"))
        repeat_count = max(to_int(first_of(data, "repeatCount", "repeat_count"), 1), 1)
        gift_type = to_int(first_of(data, "giftType", "gift_type") or first_of(gift, "type", "giftType"))

        return GiftEvent(
            actor=self._actor(data),
            gift_id=str(gift_id) if gift_id is not None else None,
            gift_name=first_of(gift, "name", "giftName", "gift_name") or first_of(data, "giftName"),
            gift_picture_url=(url_list[0] if url_list else None)
            or image.get("url")
            or first_of(gift, "giftPictureUrl", "picture_url"),
            diamond_count=diamond_count,
            repeat_count=repeat_count,
            streakable=gift_type == STREAKABLE_GIFT_TYPE,
            repeat_end=bool(first_of(data, "repeatEnd", "repeat_end", default=False)),
            coins=diamond_count * 2 * repeat_count,
            **self._timestamp(data),
        )

    def _follow(self, data: Dict[str, Any]) -> FollowEvent:
        return FollowEvent(actor=self._actor(data), **self._timestamp(data))

    def _share(self, data: Dict[str, Any]) -> ShareEvent:
        return ShareEvent(actor=self._actor(data), **self._timestamp(data))

    def _social(self, data: Dict[str, Any]) -> Optional[Union[FollowEvent, ShareEvent]]:
        display_type = str(first_of(data, "displayType", "display_type", default="")).lower()
        if "follow" in display_type:
            return self._follow(data)
        if "share" in display_type:
            return self._share(data)
        logger.debug(f"Ignoring social message with display type {display_type!r}")
        return None

    def _like(self, data: Dict[str, Any]) -> LikeEvent:
        total_likes = None
        for key in LIKE_TOTAL_FIELDS:
            value = data.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0:
                total_likes = int(value)
                break

        return LikeEvent(
            actor=self._actor(data),
            like_count=max(to_int(first_of(data, "likeCount", "count", "like_count"), 1), 1),
            total_likes=total_likes,
            **self._timestamp(data),
        )

    def _subscribe(self, data: Dict[str, Any]) -> SubscribeEvent:
        return SubscribeEvent(actor=self._actor(data), **self._timestamp(data))

    def _viewer_count(self, data: Dict[str, Any]) -> ViewerCountEvent:
        return ViewerCountEvent(
            viewer_count=max(to_int(first_of(data, "viewerCount", "viewer_count", "total")), 0),
            **self._timestamp(data),
        )

    def _room_info(self, data: Dict[str, Any]) -> RoomInfoUpdate:
        room_info = data.get("roomInfo") if isinstance(data.get("roomInfo"), dict) else data
        return RoomInfoUpdate(room_info=room_info)

    def _stream_end(self, data: Dict[str, Any]) -> StreamEnded:
        return StreamEnded()

    def _control(self, data: Dict[str, Any]) -> Optional[StreamEnded]:
        if to_int(first_of(data, "action", "controlAction")) == CONTROL_ACTION_STREAM_END:
            return StreamEnded()
        return None
