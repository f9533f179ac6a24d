"""Unit tests for DiagnosticsRecorder."""
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from livefeed.config import InMemorySettingsStore
from livefeed.ingest.credentials import CredentialResolver
from livefeed.ingest.diagnostics import DiagnosticsRecorder


@pytest.fixture
def recorder(test_settings):
    return DiagnosticsRecorder(test_settings)


def record_failures(recorder, count, handle="alice"):
    for i in range(count):
        recorder.record_attempt(handle, False, "NETWORK_ERROR", f"failure {i}")


@pytest.mark.unit
class TestAttemptHistory:
    def test_ring_buffer_keeps_last_ten(self, recorder):
        for i in range(12):
            recorder.record_attempt("alice", True, None, f"attempt {i}")

        attempts = recorder.recent_attempts()
        assert len(attempts) == 10
        assert attempts[0].message == "attempt 11"
        assert attempts[-1].message == "attempt 2"

    def test_recent_attempts_limit(self, recorder):
        for i in range(4):
            recorder.record_attempt("alice", True, None, f"attempt {i}")
        assert [a.message for a in recorder.recent_attempts(2)] == ["attempt 3", "attempt 2"]

    def test_clear(self, recorder):
        record_failures(recorder, 3)
        recorder.clear()
        assert recorder.recent_attempts() == []


@pytest.mark.unit
class TestHealthStatus:
    @pytest.mark.parametrize(
        "failures,status",
        [(0, "healthy"), (1, "healthy"), (2, "degraded"), (4, "degraded"), (5, "critical"), (10, "critical")],
    )
    def test_thresholds(self, recorder, failures, status):
        record_failures(recorder, failures)
        health = recorder.health_status()
        assert health.status == status
        assert health.recent_failures == failures

    def test_old_failures_age_out(self, recorder):
        record_failures(recorder, 5)
        for _ in range(10):
            recorder.record_attempt("alice", True)
        assert recorder.health_status().status == "healthy"

    def test_reports_missing_credential(self, recorder):
        health = recorder.health_status()
        assert health.credential_configured is False
        assert "no API key" in health.message

    def test_reports_active_credential_source_only(self, test_settings):
        store = InMemorySettingsStore({"sign_api_key": "store-key-0123456789"})
        recorder = DiagnosticsRecorder(test_settings, credentials=CredentialResolver(test_settings, store=store))

        health = recorder.health_status()
        assert health.credential_configured is True
        assert health.credential_source == "settings_store"
        assert "store-key-0123456789" not in health.model_dump_json()

    def test_connection_config(self, recorder):
        config = recorder.connection_config()
        assert config["max_auto_reconnects"] == 5
        assert config["enable_fallback_resolution"] is False


@pytest.mark.unit
@pytest.mark.asyncio
class TestFullDiagnostics:
    async def test_all_reachable(self, test_settings, monkeypatch):
        store = InMemorySettingsStore({"sign_api_key": "store-key-0123456789"})
        recorder = DiagnosticsRecorder(test_settings, credentials=CredentialResolver(test_settings, store=store))

        ws = MagicMock()
        ws.close = AsyncMock()
        monkeypatch.setattr("livefeed.ingest.diagnostics.websockets.connect", AsyncMock(return_value=ws))

        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, text="<html></html>")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            report = await recorder.run_full_diagnostics("alice", client=client)

        assert str(requests[0].url) == "https://platform.test/@alice"
        assert report.platform.success is True
        assert report.platform.status_code == 200
        assert report.relay.success is True
        ws.close.assert_awaited_once()
        assert report.health.status == "healthy"
        assert report.recommendations == []

    async def test_failures_produce_recommendations(self, recorder, monkeypatch):
        record_failures(recorder, 3)
        monkeypatch.setattr(
            "livefeed.ingest.diagnostics.websockets.connect",
            AsyncMock(side_effect=OSError("connection refused")),
        )

        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            report = await recorder.run_full_diagnostics("alice", client=client)

        assert report.platform.success is False
        assert "unreachable" in report.platform.error
        assert report.relay.error == "connection refused"

        messages = " ".join(r.message for r in report.recommendations)
        assert "No API key configured" in messages
        assert "Platform is not reachable" in messages
        assert "Relay websocket connection failed" in messages
        assert "3 failed connection attempts" in messages
        assert report.health.status == "degraded"
