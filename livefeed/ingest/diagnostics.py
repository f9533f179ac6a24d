"""
Connection Diagnostics

Keeps a bounded history of recent connection attempts, derives a health
status from it, reports which credential source is active, and can run an
on-demand reachability probe of the platform and the relay.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Any, Deque, Dict, List, Optional

import httpx
import websockets

from livefeed.config import Settings, settings as default_settings
from livefeed.ingest.credentials import CredentialResolver
from livefeed.ingest.room_resolver import browser_headers
from livefeed.schemas.status import (
    ConnectionAttemptRecord,
    CredentialReport,
    DiagnosticsReport,
    HealthReport,
    ProbeResult,
    Recommendation,
)
from livefeed.utils.logging import get_logger

logger = get_logger(__name__, category="diagnostics")

DEGRADED_FAILURES = 2
CRITICAL_FAILURES = 5
SLOW_RESPONSE_MS = 5000
FAILURE_RECOMMENDATION_THRESHOLD = 3


class DiagnosticsRecorder:
    """Ring buffer of connection attempts plus derived health."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        credentials: Optional[CredentialResolver] = None,
        capacity: Optional[int] = None,
    ):
        self.settings = settings or default_settings
        self.credentials = credentials
        self.capacity = capacity or self.settings.diagnostics_history_size
        self._attempts: Deque[ConnectionAttemptRecord] = deque(maxlen=self.capacity)

    def record_attempt(
        self,
        handle: str,
        success: bool,
        category: Optional[str] = None,
        message: Optional[str] = None,
    ) -> ConnectionAttemptRecord:
        """Append an attempt; the oldest entry is evicted once full."""
        record = ConnectionAttemptRecord(
            handle=handle,
            success=success,
            error_category=str(category) if category is not None else None,
            message=message,
        )
        self._attempts.append(record)
        if success:
            logger.debug(f"Recorded successful attempt for @{handle} ({category})")
        else:
            logger.info(f"Recorded failed attempt for @{handle}: {category} - {message}")
        return record

    def recent_attempts(self, n: Optional[int] = None) -> List[ConnectionAttemptRecord]:
        """Most recent attempts, newest first."""
        newest_first = list(reversed(self._attempts))
        if n is None:
            return newest_first
        return newest_first[:n]

    def clear(self) -> None:
        self._attempts.clear()

    def recent_failures(self) -> int:
        return sum(1 for attempt in self._attempts if not attempt.success)

    def credential_report(self) -> CredentialReport:
        if self.credentials is None:
            return CredentialReport()
        return self.credentials.describe()

    def health_status(self) -> HealthReport:
        failures = self.recent_failures()
        credentials = self.credential_report()

        if failures >= CRITICAL_FAILURES:
            status, message = "critical", "Repeated connection failures"
        elif failures >= DEGRADED_FAILURES:
            status, message = "degraded", f"{failures} failed attempts"
        else:
            status, message = "healthy", "Connection ready"
            if credentials.active_source is None:
                message = "Connection ready, but no API key is configured"

        return HealthReport(
            status=status,
            message=message,
            recent_failures=failures,
            recent_attempts=self.recent_attempts(5),
            credential_configured=credentials.active_source is not None,
            credential_source=credentials.active_source,
        )

    def connection_config(self) -> Dict[str, Any]:
        return {
            "enable_fallback_resolution": self.settings.enable_fallback_resolution,
            "connect_with_unique_id": self.settings.connect_with_unique_id,
            "connection_timeout_seconds": self.settings.connection_timeout_seconds,
            "first_frame_timeout_seconds": self.settings.first_frame_timeout_seconds,
            "max_auto_reconnects": self.settings.max_auto_reconnects,
            "reconnect_delay_seconds": self.settings.reconnect_delay_seconds,
        }

    async def probe_platform(
        self, handle: str, client: Optional[httpx.AsyncClient] = None
    ) -> ProbeResult:
        """Check that the broadcaster page answers with HTTP 200."""
        url = f"{self.settings.platform_base_url}/@{handle}"
        owns_client = client is None
        if client is None:
            client = httpx.AsyncClient(timeout=self.settings.probe_timeout_seconds)

        started = time.monotonic()
        result = ProbeResult()
        try:
            response = await client.get(url, headers=browser_headers())
            result.status_code = response.status_code
            result.success = response.status_code == 200
        except httpx.HTTPError as e:
            result.error = str(e) or e.__class__.__name__
        finally:
            result.response_time_ms = int((time.monotonic() - started) * 1000)
            if owns_client:
                await client.aclose()
        return result

    async def probe_relay(self) -> ProbeResult:
        """Check that a websocket handshake with the relay succeeds."""
        started = time.monotonic()
        result = ProbeResult()
        try:
            ws = await asyncio.wait_for(
                websockets.connect(self.settings.relay_ws_url),
                timeout=self.settings.probe_timeout_seconds,
            )
            await ws.close()
            result.success = True
        except asyncio.TimeoutError:
            result.error = f"Connection timeout ({self.settings.probe_timeout_seconds:g}s)"
        except (websockets.exceptions.WebSocketException, OSError) as e:
            result.error = str(e) or e.__class__.__name__
        finally:
            result.response_time_ms = int((time.monotonic() - started) * 1000)
        return result

    async def run_full_diagnostics(
        self, handle: str, client: Optional[httpx.AsyncClient] = None
    ) -> DiagnosticsReport:
        """Probe upstream reachability and combine it with recorded history."""
        logger.info(f"Running connection diagnostics for @{handle}")

        credentials = self.credential_report()
        platform = await self.probe_platform(handle, client=client)
        relay = await self.probe_relay()

        report = DiagnosticsReport(
            handle=handle,
            credentials=credentials,
            platform=platform,
            relay=relay,
            connection_config=self.connection_config(),
            recent_attempts=self.recent_attempts(),
            health=self.health_status(),
        )
        report.recommendations = self._recommendations(report)

        logger.info(
            f"Diagnostics complete: health={report.health.status}, "
            f"platform={'ok' if platform.success else 'failed'}, "
            f"relay={'ok' if relay.success else 'failed'}"
        )
        return report

    def _recommendations(self, report: DiagnosticsReport) -> List[Recommendation]:
        recommendations = []

        if report.credentials.active_source is None:
            recommendations.append(
                Recommendation(
                    severity="warning",
                    message="No API key configured.",
                    action="Store an API key in the settings store or set SIGN_API_KEY.",
                )
            )

        if not report.platform.success:
            recommendations.append(
                Recommendation(
                    severity="error",
                    message="Platform is not reachable.",
                    action="Check the internet connection and firewall settings.",
                )
            )

        if not report.relay.success:
            recommendations.append(
                Recommendation(
                    severity="warning",
                    message="Relay websocket connection failed.",
                    action="Make sure outbound websocket connections are allowed.",
                )
            )

        if (report.platform.response_time_ms or 0) > SLOW_RESPONSE_MS:
            recommendations.append(
                Recommendation(
                    severity="warning",
                    message=f"Platform responded slowly ({report.platform.response_time_ms}ms).",
                    action="A slow connection can cause timeouts; consider raising the timeouts.",
                )
            )

        failures = self.recent_failures()
        if failures >= FAILURE_RECOMMENDATION_THRESHOLD:
            recommendations.append(
                Recommendation(
                    severity="error",
                    message=f"{failures} failed connection attempts in the last {self.capacity}.",
                    action="Check the handle, the internet connection, and whether the stream is live.",
                )
            )

        return recommendations
