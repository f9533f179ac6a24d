"""
livefeed service entry point

Wires the object graph (settings store, credentials, diagnostics, resolver,
supervisor) around one LifecycleManager, connects to
``settings.target_handle`` and logs published events until SIGINT/SIGTERM.

Run with: python -m livefeed.main
"""

import asyncio
from typing import Optional

from livefeed.config import InMemorySettingsStore, Settings, SettingsStore, settings
from livefeed.ingest.credentials import CredentialResolver
from livefeed.ingest.diagnostics import DiagnosticsRecorder
from livefeed.ingest.errors import ConfigurationError, ConnectionFailedError
from livefeed.ingest.room_resolver import RoomResolver
from livefeed.ingest.supervisor import ConnectionSupervisor
from livefeed.lifecycle import LifecycleManager
from livefeed.utils.logging import configure_logging, get_logger
from livefeed.utils.pubsub import Subscription

logger = get_logger(__name__, category="system")


def build_supervisor(
    app_settings: Optional[Settings] = None,
    store: Optional[SettingsStore] = None,
    lifecycle: Optional[LifecycleManager] = None,
) -> ConnectionSupervisor:
    """Build a supervisor whose collaborators share one diagnostics recorder."""
    app_settings = app_settings or settings
    store = store if store is not None else InMemorySettingsStore()
    lifecycle = lifecycle or LifecycleManager()

    credentials = CredentialResolver(app_settings, store=store)
    diagnostics = DiagnosticsRecorder(app_settings, credentials=credentials)
    resolver = RoomResolver(app_settings, diagnostics=diagnostics)
    lifecycle.register("room-resolver", resolver.aclose)

    return ConnectionSupervisor(
        settings=app_settings,
        diagnostics=diagnostics,
        resolver=resolver,
        credentials=credentials,
        store=store,
        lifecycle=lifecycle,
    )


async def _log_events(subscription: Subscription) -> None:
    async for event in subscription:
        logger.info(f"[{event.type}] {event.model_dump_json(exclude_none=True)}")


async def run(handle: Optional[str] = None) -> None:
    """Connect to ``handle`` (or settings.target_handle) and run until a signal arrives."""
    handle = handle or settings.target_handle
    if not handle:
        raise ConfigurationError("No broadcaster handle configured. Set TARGET_HANDLE.")

    lifecycle = LifecycleManager()
    lifecycle.install_signal_handlers(asyncio.get_running_loop())
    supervisor = build_supervisor(lifecycle=lifecycle)

    subscription = supervisor.events.subscribe(name="log")
    consumer = asyncio.create_task(_log_events(subscription))

    try:
        await supervisor.connect(handle)
    except ConnectionFailedError as e:
        logger.error(f"Initial connection failed: {e}")
        logger.error(f"Suggestion: {e.classification.suggestion}")
        health = supervisor.health()
        logger.info(f"Connection health: {health.status} ({health.message})")

    await lifecycle.wait_for_shutdown()
    await consumer


def main() -> None:
    configure_logging()
    asyncio.run(run())


if __name__ == "__main__":
    main()
