import pytest

from livefeed.config import Settings


@pytest.fixture(autouse=True)
def settings_env(monkeypatch):
    """Keep the developer's environment out of unit tests."""
    monkeypatch.delenv("SIGN_API_KEY", raising=False)
    monkeypatch.delenv("TARGET_HANDLE", raising=False)
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    yield


@pytest.fixture
def test_settings():
    """Settings with timers short enough (or long enough) for deterministic tests."""
    return Settings(
        _env_file=None,
        sign_api_key=None,
        platform_base_url="https://platform.test",
        fallback_api_url="https://fallback.test/live/room_id",
        relay_ws_url="wss://relay.test",
        reconnect_delay_seconds=0,
        rate_limit_cooldown_seconds=0,
        stats_interval_seconds=3600,
        stable_connection_seconds=3600,
        connection_timeout_seconds=5,
        resolver_initial_delay_seconds=1.0,
    )
