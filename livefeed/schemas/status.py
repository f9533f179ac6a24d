"""
Status Channel Schemas

Models broadcast on the supervisor's status channel (periodic stats and
lifecycle updates) and returned by the diagnostics query surface.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from livefeed.schemas.events import utc_now


class StatsAggregate(BaseModel):
    """Counters for the current observation window."""

    viewers: int = 0
    likes: int = 0
    total_coins: int = 0
    followers: int = 0
    shares: int = 0
    gifts: int = 0


class StatsSnapshot(StatsAggregate):
    """StatsAggregate plus elapsed stream duration, broadcast once per second."""

    kind: Literal["stats"] = "stats"
    stream_duration: int = Field(default=0, description="Whole seconds since stream start")
    stream_start_time: Optional[datetime] = None
    timestamp: datetime = Field(default_factory=utc_now)


class StatusUpdate(BaseModel):
    """Lifecycle transition or operator signal."""

    kind: Literal["status"] = "status"
    status: str = Field(
        description="connected, reconnecting, disconnected, auth_error, error, "
        "manual_reconnect_required, stream_ended or stream_start_updated"
    )
    handle: Optional[str] = None
    detail: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)


class ConnectionAttemptRecord(BaseModel):
    """One entry of the diagnostics ring buffer."""

    timestamp: datetime = Field(default_factory=utc_now)
    handle: str
    success: bool
    error_category: Optional[str] = None
    message: Optional[str] = None


class CredentialSourceStatus(BaseModel):
    """Presence and shape of one credential source, never the raw value."""

    is_set: bool = False
    valid: bool = False
    preview: Optional[str] = None


class CredentialReport(BaseModel):
    sources: Dict[str, CredentialSourceStatus] = Field(default_factory=dict)
    active_source: Optional[str] = None
    active_preview: Optional[str] = None


class HealthReport(BaseModel):
    status: Literal["healthy", "degraded", "critical"]
    message: str
    recent_failures: int = 0
    recent_attempts: List[ConnectionAttemptRecord] = Field(default_factory=list)
    credential_configured: bool = False
    credential_source: Optional[str] = None


class ProbeResult(BaseModel):
    success: bool = False
    response_time_ms: Optional[int] = None
    status_code: Optional[int] = None
    error: Optional[str] = None


class Recommendation(BaseModel):
    severity: Literal["info", "warning", "error"]
    message: str
    action: str


class DiagnosticsReport(BaseModel):
    timestamp: datetime = Field(default_factory=utc_now)
    handle: str
    credentials: CredentialReport
    platform: ProbeResult
    relay: ProbeResult
    connection_config: Dict[str, Any] = Field(default_factory=dict)
    recent_attempts: List[ConnectionAttemptRecord] = Field(default_factory=list)
    health: HealthReport
    recommendations: List[Recommendation] = Field(default_factory=list)
