"""
Ingest layer: room ID resolution, connection supervision, and diagnostics
"""

from .diagnostics import DiagnosticsRecorder
from .errors import ConnectionFailedError, ErrorCategory, ResolutionError, classify_error
from .room_resolver import RoomResolver
from .supervisor import ConnectionState, ConnectionSupervisor, Session

__all__ = [
    "DiagnosticsRecorder",
    "ConnectionFailedError",
    "ErrorCategory",
    "ResolutionError",
    "classify_error",
    "RoomResolver",
    "ConnectionState",
    "ConnectionSupervisor",
    "Session",
]
