"""
Layered credential resolution

Source order: explicit override -> runtime settings store -> environment ->
secret provider. The first value that passes shape validation wins. There
is deliberately no built-in default secret; when every layer is empty the
caller gets a ConfigurationError.
"""

from __future__ import annotations

from typing import Callable, List, Optional, Tuple

from pydantic import BaseModel

from livefeed.config import Settings, SettingsStore, settings as default_settings
from livefeed.ingest.errors import ConfigurationError
from livefeed.schemas.status import CredentialReport, CredentialSourceStatus
from livefeed.utils.logging import get_logger, mask_secret

logger = get_logger(__name__, category="connection")

SOURCE_EXPLICIT = "explicit"
SOURCE_STORE = "settings_store"
SOURCE_ENVIRONMENT = "environment"
SOURCE_SECRET_PROVIDER = "secret_provider"


class ResolvedCredential(BaseModel):
    value: str
    source: str

    @property
    def preview(self) -> Optional[str]:
        return mask_secret(self.value)

    def __repr__(self) -> str:
        return f"ResolvedCredential(source={self.source!r}, value={self.preview!r})"

    __str__ = __repr__


class CredentialResolver:
    """Resolves the relay API key from layered sources."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[SettingsStore] = None,
        secret_provider: Optional[Callable[[], Optional[str]]] = None,
    ):
        """
        Args:
            settings: Settings instance (environment layer and store key)
            store: Runtime settings store consulted before the environment
            secret_provider: Callable returning a secret from an external
                secret manager, consulted last
        """
        self.settings = settings or default_settings
        self.store = store
        self.secret_provider = secret_provider

    def is_valid(self, value: Optional[str]) -> bool:
        if not value:
            return False
        return len(value.strip()) >= self.settings.credential_min_length

    def _layers(self, explicit: Optional[str] = None) -> List[Tuple[str, Optional[str]]]:
        store_value = None
        if self.store is not None:
            store_value = self.store.get_setting(self.settings.credential_store_key)

        provider_value = None
        if self.secret_provider is not None:
            try:
                provider_value = self.secret_provider()
            except Exception as e:
                logger.warning(f"Secret provider failed, skipping that source: {e}")

        return [
            (SOURCE_EXPLICIT, explicit),
            (SOURCE_STORE, store_value),
            (SOURCE_ENVIRONMENT, self.settings.sign_api_key),
            (SOURCE_SECRET_PROVIDER, provider_value),
        ]

    def resolve(self, explicit: Optional[str] = None) -> ResolvedCredential:
        """
        Return the first valid credential.

        Raises:
            ConfigurationError: if no layer yields a valid value
        """
        rejected = []
        for source, value in self._layers(explicit):
            if value is None or value == "":
                continue
            if not self.is_valid(value):
                rejected.append(source)
                logger.warning(
                    f"Ignoring credential from {source}: shorter than "
                    f"{self.settings.credential_min_length} characters"
                )
                continue
            logger.debug(f"Using credential from {source} ({mask_secret(value)})")
            return ResolvedCredential(value=value.strip(), source=source)

        detail = f" (rejected: {', '.join(rejected)})" if rejected else ""
        raise ConfigurationError(
            "No valid API key configured. Set it in the settings store "
            f"('{self.settings.credential_store_key}') or the SIGN_API_KEY environment variable{detail}"
        )

    def describe(self, explicit: Optional[str] = None) -> CredentialReport:
        """Report every source without exposing raw values."""
        report = CredentialReport()
        for source, value in self._layers(explicit):
            if source == SOURCE_EXPLICIT and not value:
                continue
            status = CredentialSourceStatus(
                is_set=bool(value),
                valid=self.is_valid(value),
                preview=mask_secret(value),
            )
            report.sources[source] = status
            if report.active_source is None and status.valid:
                report.active_source = source
                report.active_preview = status.preview
        return report
