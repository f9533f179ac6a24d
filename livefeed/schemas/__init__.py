"""
Pydantic schemas for canonical events and status broadcasts
"""

from .events import (
    Actor,
    ChatEvent,
    ConnectedEvent,
    DisconnectedEvent,
    ErrorEvent,
    FollowEvent,
    GiftEvent,
    LikeEvent,
    LiveEvent,
    RoomInfoUpdate,
    ShareEvent,
    StreamEnded,
    SubscribeEvent,
    ViewerCountEvent,
)
from .status import (
    ConnectionAttemptRecord,
    CredentialReport,
    DiagnosticsReport,
    HealthReport,
    StatsAggregate,
    StatsSnapshot,
    StatusUpdate,
)

__all__ = [
    "Actor",
    "ChatEvent",
    "ConnectedEvent",
    "DisconnectedEvent",
    "ErrorEvent",
    "FollowEvent",
    "GiftEvent",
    "LikeEvent",
    "LiveEvent",
    "RoomInfoUpdate",
    "ShareEvent",
    "StreamEnded",
    "SubscribeEvent",
    "ViewerCountEvent",
    "ConnectionAttemptRecord",
    "CredentialReport",
    "DiagnosticsReport",
    "HealthReport",
    "StatsAggregate",
    "StatsSnapshot",
    "StatusUpdate",
]
