"""
Canonical Live Event Schemas

One tagged pydantic model per event type. Raw platform payloads are
validated into these shapes once, at the normalization boundary; every
consumer downstream reads fixed fields only.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
	return datetime.now(timezone.utc)


class Actor(BaseModel):
	"""Identity of the viewer who caused an event."""

	model_config = ConfigDict(frozen=True)

	user_id: Optional[str] = None
	username: Optional[str] = None
	nickname: Optional[str] = None
	profile_picture_url: Optional[str] = None


class _LiveEventBase(BaseModel):
	model_config = ConfigDict(frozen=True)

	timestamp: datetime = Field(default_factory=utc_now)
	upstream_timestamp: bool = Field(
		default=False,
		description="True when timestamp came from the platform rather than local receipt time",
	)


class ChatEvent(_LiveEventBase):
	"""A chat comment."""

	type: Literal["chat"] = "chat"
	actor: Actor
	message: str
	is_moderator: bool = False
	is_subscriber: bool = False
	team_member_level: int = 0


class GiftEvent(_LiveEventBase):
	"""A virtual gift, possibly one message of a streak."""

	type: Literal["gift"] = "gift"
	actor: Actor
	gift_id: Optional[str] = None
	gift_name: Optional[str] = None
	gift_picture_url: Optional[str] = None
	diamond_count: int = 0
	repeat_count: int = 1
	streakable: bool = False
	repeat_end: bool = False
	coins: int = 0
	total_coins: Optional[int] = Field(default=None, description="Running session total after this gift was counted")


class FollowEvent(_LiveEventBase):
	"""A new follower."""

	type: Literal["follow"] = "follow"
	actor: Actor


class ShareEvent(_LiveEventBase):
	"""The stream was shared by a viewer."""

	type: Literal["share"] = "share"
	actor: Actor


class SubscribeEvent(_LiveEventBase):
	"""A paid subscription."""

	type: Literal["subscribe"] = "subscribe"
	actor: Actor


class LikeEvent(_LiveEventBase):
	"""A burst of likes from one viewer."""

	type: Literal["like"] = "like"
	actor: Actor
	like_count: int = 1
	total_likes: Optional[int] = Field(default=None, description="Absolute room total when the platform reports one")


class ViewerCountEvent(_LiveEventBase):
	"""Current concurrent viewer count."""

	type: Literal["viewerCount"] = "viewerCount"
	viewer_count: int = 0


class ConnectedEvent(_LiveEventBase):
	"""The live session is open."""

	type: Literal["connected"] = "connected"
	handle: str
	room_id: Optional[str] = None
	stream_start_time: Optional[datetime] = None


class DisconnectedEvent(_LiveEventBase):
	"""The live session closed, explicitly or not."""

	type: Literal["disconnected"] = "disconnected"
	handle: Optional[str] = None
	reason: Optional[str] = None


class ErrorEvent(_LiveEventBase):
	"""A classified connection failure."""

	type: Literal["error"] = "error"
	handle: Optional[str] = None
	category: str
	message: str
	suggestion: Optional[str] = None
	retryable: bool = True


LiveEvent = Annotated[
	Union[
		ChatEvent,
		GiftEvent,
		FollowEvent,
		ShareEvent,
		SubscribeEvent,
		LikeEvent,
		ViewerCountEvent,
		ConnectedEvent,
		DisconnectedEvent,
		ErrorEvent,
	],
	Field(discriminator="type"),
]

# Event types that originate from the platform (and are therefore deduplicated)
PLATFORM_EVENT_TYPES = frozenset(
	{"chat", "gift", "follow", "share", "like", "subscribe", "viewerCount"}
)


class RoomInfoUpdate(BaseModel):
	"""Room metadata pushed by the platform mid-session. Not published."""

	room_info: Dict[str, Any] = Field(default_factory=dict)


class StreamEnded(BaseModel):
	"""The broadcaster ended the stream. Not published."""

	reason: str = "stream ended by broadcaster"
