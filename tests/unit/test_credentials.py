"""Unit tests for layered credential resolution."""
import pytest

from livefeed.config import InMemorySettingsStore
from livefeed.ingest.credentials import (
    SOURCE_ENVIRONMENT,
    SOURCE_EXPLICIT,
    SOURCE_SECRET_PROVIDER,
    SOURCE_STORE,
    CredentialResolver,
)
from livefeed.ingest.errors import ConfigurationError

STORE_KEY = "store-key-0123456789"
ENV_KEY = "env-key-0123456789"


@pytest.fixture
def env_settings(test_settings):
    return test_settings.model_copy(update={"sign_api_key": ENV_KEY})


@pytest.mark.unit
class TestCredentialResolver:
    def test_explicit_override_wins(self, env_settings):
        store = InMemorySettingsStore({"sign_api_key": STORE_KEY})
        resolver = CredentialResolver(env_settings, store=store)

        resolved = resolver.resolve("explicit-0123456789")
        assert resolved.source == SOURCE_EXPLICIT
        assert resolved.value == "explicit-0123456789"

    def test_store_before_environment(self, env_settings):
        resolver = CredentialResolver(env_settings, store=InMemorySettingsStore({"sign_api_key": STORE_KEY}))
        assert resolver.resolve().source == SOURCE_STORE

    def test_environment_layer(self, env_settings):
        resolver = CredentialResolver(env_settings, store=InMemorySettingsStore())
        resolved = resolver.resolve()
        assert resolved.source == SOURCE_ENVIRONMENT
        assert resolved.value == ENV_KEY

    def test_secret_provider_is_last_resort(self, test_settings):
        resolver = CredentialResolver(test_settings, secret_provider=lambda: "vault-0123456789")
        assert resolver.resolve().source == SOURCE_SECRET_PROVIDER

    def test_short_values_are_skipped(self, env_settings):
        store = InMemorySettingsStore({"sign_api_key": "short"})
        resolver = CredentialResolver(env_settings, store=store)
        assert resolver.resolve("tiny").source == SOURCE_ENVIRONMENT

    def test_nothing_configured_fails_fast(self, test_settings):
        resolver = CredentialResolver(test_settings, store=InMemorySettingsStore())
        with pytest.raises(ConfigurationError, match="No valid API key configured"):
            resolver.resolve()

    def test_failing_secret_provider_is_skipped(self, test_settings):
        def broken():
            raise RuntimeError("vault unreachable")

        resolver = CredentialResolver(test_settings, secret_provider=broken)
        with pytest.raises(ConfigurationError):
            resolver.resolve()

    def test_repr_never_shows_secret(self, env_settings):
        resolved = CredentialResolver(env_settings).resolve()
        assert ENV_KEY not in repr(resolved)
        assert resolved.preview == "env-key-..."

    def test_describe_reports_masked_sources(self, env_settings):
        store = InMemorySettingsStore({"sign_api_key": "short"})
        report = CredentialResolver(env_settings, store=store).describe()

        assert report.active_source == SOURCE_ENVIRONMENT
        assert report.active_preview == "env-key-..."
        assert report.sources[SOURCE_STORE].is_set is True
        assert report.sources[SOURCE_STORE].valid is False
        assert report.sources[SOURCE_STORE].preview == "***"
        assert SOURCE_EXPLICIT not in report.sources
        assert ENV_KEY not in report.model_dump_json()
