"""
Configuration Management

Single source of truth for every tunable in the resilience engine:
timeouts, retry policy, feature toggles and the environment credential
layer. Values load from environment variables (case-insensitive) and an
optional ``.env`` file.

The runtime configuration store (the settings CRUD owned by the host
application) is modelled separately by ``SettingsStore``: those values can
change while the process runs, environment values cannot.
"""

from typing import Dict, Optional, Protocol

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application Settings

    Pydantic loads each field from the environment variable of the same
    name (``SIGN_API_KEY`` -> ``sign_api_key``).
    """

    log_level: str = "INFO"
    log_categories: Optional[str] = None  # Comma-separated categories (resolver,connection,events,diagnostics,system). If None, show all logs.

    # Broadcaster handle used by livefeed.main
    target_handle: Optional[str] = None

    # Platform endpoints
    platform_base_url: str = "https://www.tiktok.com"
    fallback_api_url: str = "https://tiktok.eulerstream.com/live/room_id"
    relay_ws_url: str = "wss://ws.eulerstream.com"

    # Credentials (environment layer)
    sign_api_key: Optional[str] = None
    credential_store_key: str = "sign_api_key"  # key looked up in the runtime settings store
    credential_min_length: int = 10

    # Feature toggles
    enable_fallback_resolution: bool = False  # third-party room id lookup
    connect_with_unique_id: bool = False  # transport resolves the room itself

    # Room ID resolution
    room_id_cache_ttl_seconds: int = 300
    resolver_max_attempts: int = 5
    resolver_initial_delay_seconds: float = 1.0
    resolver_max_delay_seconds: float = 30.0
    resolver_backoff_multiplier: float = 2.0
    resolver_jitter_ratio: float = 0.1
    html_timeout_seconds: float = 15.0
    api_timeout_seconds: float = 10.0
    fallback_timeout_seconds: float = 12.0

    # Connection supervision
    connection_timeout_seconds: float = 30.0
    first_frame_timeout_seconds: float = 5.0
    max_auto_reconnects: int = 5
    reconnect_delay_seconds: float = 5.0
    stable_connection_seconds: float = 300.0
    stats_interval_seconds: float = 1.0
    rate_limit_cooldown_seconds: float = 60.0

    # Event deduplication
    dedup_ttl_seconds: float = 60.0
    dedup_max_entries: int = 1000

    # Diagnostics
    diagnostics_history_size: int = 10
    probe_timeout_seconds: float = 10.0

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Allow extra env vars without validation errors


class SettingsStore(Protocol):
    """Runtime key/value settings owned by the host application."""

    def get_setting(self, key: str) -> Optional[str]:
        ...

    def set_setting(self, key: str, value: str) -> None:
        ...


class InMemorySettingsStore:
    """Dict-backed SettingsStore used when no host store is injected."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._values: Dict[str, str] = dict(initial or {})

    def get_setting(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set_setting(self, key: str, value: str) -> None:
        self._values[key] = value


# Loaded once when the module is imported
settings = Settings()
