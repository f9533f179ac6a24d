"""
Connection Supervisor

Owns the single live session of this process:

- connect: layered credential lookup, optional room ID resolution, transport open
- read loop: normalize -> deduplicate -> account -> publish, in arrival order
- timers: 1 Hz stats broadcast, stable-connection counter reset, reconnect delay
- bounded auto-reconnect driven by the error taxonomy

Every background task is tagged with the session generation it was started
for. Teardown bumps the generation, so a task that wakes up after its
session ended sees the mismatch and exits without touching the new session.
"""

import asyncio
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Set

from pydantic import BaseModel

from livefeed.config import InMemorySettingsStore, Settings, SettingsStore, settings as default_settings
from livefeed.ingest.credentials import CredentialResolver
from livefeed.ingest.dedup import EventDeduplicator
from livefeed.ingest.diagnostics import DiagnosticsRecorder
from livefeed.ingest.errors import (
    ConnectionFailedError,
    ErrorCategory,
    ErrorClassification,
    LiveFeedError,
    ResolutionError,
    build_classification,
    classify_error,
)
from livefeed.ingest.normalizer import EventNormalizer
from livefeed.ingest.room_resolver import RoomResolver, normalize_handle
from livefeed.ingest.stats import StatsAggregator
from livefeed.ingest.stream_time import StreamStartTracker
from livefeed.ingest.transport import LiveTransport, WebcastRelayTransport
from livefeed.lifecycle import LifecycleManager
from livefeed.schemas.events import (
    ConnectedEvent,
    DisconnectedEvent,
    ErrorEvent,
    RoomInfoUpdate,
    StreamEnded,
    utc_now,
)
from livefeed.schemas.status import HealthReport, StatsSnapshot, StatusUpdate
from livefeed.utils.logging import get_logger
from livefeed.utils.pubsub import EventChannel

logger = get_logger(__name__, category="connection")

LAST_CONNECTED_HANDLE_KEY = "last_connected_handle"


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    AUTH_ERROR = "auth_error"
    DISCONNECTED = "disconnected"


class Session(BaseModel):
    handle: Optional[str] = None
    room_id: Optional[str] = None
    state: ConnectionState = ConnectionState.IDLE
    stream_start_time: Optional[datetime] = None
    reconnect_attempt_count: int = 0
    last_persisted_start_time: Optional[datetime] = None
    credential_source: Optional[str] = None
    connected_at: Optional[datetime] = None


class ConnectionSupervisor:
    """Lifecycle owner for one live session at a time."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        diagnostics: Optional[DiagnosticsRecorder] = None,
        resolver: Optional[RoomResolver] = None,
        credentials: Optional[CredentialResolver] = None,
        transport_factory: Optional[Callable[[], LiveTransport]] = None,
        store: Optional[SettingsStore] = None,
        lifecycle: Optional[LifecycleManager] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            settings: Settings instance (defaults to the global settings)
            diagnostics: Attempt recorder shared with the resolver
            resolver: Room ID resolver used unless the transport resolves implicitly
            credentials: Layered API key lookup
            transport_factory: Zero-argument callable building a fresh LiveTransport
            store: Runtime settings store (credential layer, last connected handle)
            lifecycle: Manager the supervisor registers its shutdown hook with
            clock: Wall clock returning aware datetimes
        """
        self.settings = settings or default_settings
        self.store = store if store is not None else InMemorySettingsStore()
        self.credentials = credentials or CredentialResolver(self.settings, store=self.store)
        self.diagnostics = diagnostics or DiagnosticsRecorder(self.settings, credentials=self.credentials)

        self._owns_resolver = resolver is None
        self.resolver = resolver or RoomResolver(self.settings, diagnostics=self.diagnostics)
        self._transport_factory = transport_factory or (lambda: WebcastRelayTransport(self.settings))
        self._clock = clock or utc_now

        self.normalizer = EventNormalizer(now=self._clock)
        self.dedup = EventDeduplicator(
            ttl_seconds=self.settings.dedup_ttl_seconds,
            max_entries=self.settings.dedup_max_entries,
        )
        self.start_tracker = StreamStartTracker()
        self.stats = StatsAggregator()

        self._events = EventChannel("events")
        self._status = EventChannel("status")

        self.session = Session()
        self._api_key: Optional[str] = None
        self._transport: Optional[LiveTransport] = None
        self._generation = 0
        self._reader_task: Optional[asyncio.Task] = None
        self._stats_task: Optional[asyncio.Task] = None
        self._stable_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._close_tasks: Set[asyncio.Task] = set()

        self.lifecycle = lifecycle or LifecycleManager()
        self._hook_name = f"connection-supervisor-{id(self)}"
        self.lifecycle.register(self._hook_name, self.shutdown)

    # Public surface

    @property
    def state(self) -> ConnectionState:
        return self.session.state

    @property
    def events(self) -> EventChannel:
        """Canonical live events."""
        return self._events

    @property
    def status(self) -> EventChannel:
        """StatsSnapshot (1 Hz) and StatusUpdate broadcasts."""
        return self._status

    def get_stats(self) -> StatsSnapshot:
        return self.stats.snapshot(self.start_tracker.start_time, self._clock())

    def health(self) -> HealthReport:
        return self.diagnostics.health_status()

    async def connect(self, handle: str, *, api_key: Optional[str] = None) -> Session:
        """
        Open a live session for ``handle``, replacing any active one.

        A manual connect resets the auto-reconnect counter.

        Raises:
            ConnectionFailedError: classified failure; never retried from here
        """
        if self.lifecycle.is_shutting_down:
            raise LiveFeedError("Cannot connect while shutting down")
        self._api_key = api_key
        self.session.reconnect_attempt_count = 0
        return await self._open_session(normalize_handle(handle), manual=True)

    def disconnect(self, clear_handle: bool = True, reason: str = "manual disconnect") -> None:
        """
        End the session immediately.

        All timers are cancelled, fingerprints cleared and the transport close
        scheduled before this returns. With ``clear_handle`` the persisted
        stream start is dropped too, so the next connect starts fresh.
        """
        handle = self.session.handle
        was_active = self.session.state in (
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
        )

        self._teardown()
        self.stats.reset()

        if clear_handle:
            if handle:
                self.start_tracker.forget(handle)
            self.session = Session(state=ConnectionState.DISCONNECTED)
            self._api_key = None
        else:
            self.session.state = ConnectionState.DISCONNECTED

        if was_active or handle:
            logger.info(f"Disconnected from @{handle}: {reason}")
            self._events.publish(DisconnectedEvent(handle=handle, reason=reason))
            self._publish_status("disconnected", handle, reason=reason)

    async def shutdown(self) -> None:
        """Disconnect, wait for transport closes, and close both channels."""
        self.disconnect(reason="shutdown")
        if self._close_tasks:
            await asyncio.gather(*list(self._close_tasks))
        if self._owns_resolver:
            await self.resolver.aclose()
        self._events.close()
        self._status.close()
        self.lifecycle.unregister(self._hook_name)

    # Connect / teardown

    async def _open_session(self, handle: str, manual: bool) -> Session:
        same_handle = self.session.handle == handle
        previous = self.session.handle

        self._teardown(keep_reconnect=not manual)
        if previous and not same_handle:
            self.start_tracker.forget(previous)

        generation = self._generation
        self.session.handle = handle
        self.session.state = ConnectionState.CONNECTING
        self.session.room_id = None
        self.stats.reset()

        logger.info(
            f"Connecting to @{handle}"
            + ("" if manual else f" (auto-reconnect {self.session.reconnect_attempt_count}/{self.settings.max_auto_reconnects})")
        )

        transport = None
        try:
            credential = self.credentials.resolve(self._api_key)

            room_id = None
            if not self.settings.connect_with_unique_id:
                room_id = await self.resolver.resolve(
                    handle,
                    credentials=credential.value,
                    disable_optional_fallback=not self.settings.enable_fallback_resolution,
                )
                if generation != self._generation:
                    return self._superseded(handle)

            transport = self._transport_factory()
            self._transport = transport
            room_info = await asyncio.wait_for(
                transport.open(handle, room_id=room_id, api_key=credential.value),
                timeout=self._open_timeout(),
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if transport is not None and self._transport is transport:
                self._transport = None
                self._schedule_close(transport)
            if generation != self._generation:
                return self._superseded(handle)
            self._fail_connect(handle, e)

        if generation != self._generation:
            return self._superseded(handle)

        now = self._clock()
        start = self.start_tracker.begin(handle, room_info, now, restore=same_handle)

        self.session.state = ConnectionState.CONNECTED
        self.session.room_id = room_id or _room_id_from(room_info)
        self.session.connected_at = now
        self.session.credential_source = credential.source
        self.session.stream_start_time = start
        self.session.last_persisted_start_time = self.start_tracker.restore(handle)

        self.store.set_setting(LAST_CONNECTED_HANDLE_KEY, handle)
        self.diagnostics.record_attempt(
            handle, True, None, f"Connected (room {self.session.room_id or 'implicit'})"
        )

        logger.info(f"Connected to @{handle} (room {self.session.room_id or 'implicit'})")
        self._events.publish(
            ConnectedEvent(handle=handle, room_id=self.session.room_id, stream_start_time=start)
        )
        self._publish_status(
            "connected",
            handle,
            room_id=self.session.room_id,
            credential_source=credential.source,
            reconnect_attempt=self.session.reconnect_attempt_count,
        )

        self._reader_task = asyncio.create_task(self._read_loop(transport, generation))
        self._stats_task = asyncio.create_task(self._stats_loop(generation))
        self._stable_task = asyncio.create_task(self._stable_timer(generation))
        return self.session

    def _open_timeout(self) -> float:
        # Outer cap on transport.open(): handshake plus the wait for the first frame
        return self.settings.connection_timeout_seconds + self.settings.first_frame_timeout_seconds

    def _superseded(self, handle: str) -> Session:
        # A later connect or disconnect already tore this attempt down
        logger.info(f"Connection attempt for @{handle} was superseded")
        return self.session

    def _fail_connect(self, handle: str, exc: Exception) -> None:
        classification = classify_error(exc)
        logger.error(f"Connection to @{handle} failed [{classification.category.value}]: {classification.message}")

        # The resolver records its own aggregated failure
        if not isinstance(exc, ResolutionError):
            self.diagnostics.record_attempt(
                handle, False, classification.category.value, classification.message
            )

        self.session.state = (
            ConnectionState.AUTH_ERROR if classification.requires_operator else ConnectionState.DISCONNECTED
        )
        self._publish_error(handle, classification)
        raise ConnectionFailedError(classification) from exc

    def _teardown(self, keep_reconnect: bool = False) -> None:
        """Idempotent: cancel timers, drop the transport, forget fingerprints."""
        self._generation += 1

        tasks = [self._reader_task, self._stats_task, self._stable_task]
        if not keep_reconnect:
            tasks.append(self._reconnect_task)
            self._reconnect_task = None
        self._reader_task = self._stats_task = self._stable_task = None

        current = asyncio.current_task() if _loop_running() else None
        for task in tasks:
            if task is not None and task is not current and not task.done():
                task.cancel()

        transport, self._transport = self._transport, None
        if transport is not None:
            self._schedule_close(transport)

        self.dedup.clear()

    def _schedule_close(self, transport: LiveTransport) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; transport close skipped")
            return
        task = loop.create_task(self._close_transport(transport))
        self._close_tasks.add(task)
        task.add_done_callback(self._close_tasks.discard)

    async def _close_transport(self, transport: LiveTransport) -> None:
        try:
            await transport.close()
        except Exception as e:
            logger.warning(f"Error closing transport: {e}")

    # Background tasks

    async def _read_loop(self, transport: LiveTransport, generation: int) -> None:
        error: Optional[BaseException] = None
        try:
            async for raw in transport.messages():
                self._handle_message(raw)
                if generation != self._generation:
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in message reader: {e}", exc_info=True)
            error = e
        else:
            error = transport.closed_error()

        if generation != self._generation:
            return
        self._on_transport_closed(error)

    async def _stats_loop(self, generation: int) -> None:
        while True:
            await asyncio.sleep(self.settings.stats_interval_seconds)
            if generation != self._generation:
                return
            self._status.publish(self.get_stats())

    async def _stable_timer(self, generation: int) -> None:
        await asyncio.sleep(self.settings.stable_connection_seconds)
        if generation != self._generation:
            return
        if self.session.reconnect_attempt_count:
            logger.info(
                f"Connection stable for {self.settings.stable_connection_seconds:g}s, "
                "resetting reconnect counter"
            )
        self.session.reconnect_attempt_count = 0

    async def _reconnect_after(self, handle: str, delay: float, generation: int) -> None:
        await asyncio.sleep(delay)
        if generation != self._generation or self.session.handle != handle:
            return
        try:
            await self._open_session(handle, manual=False)
        except ConnectionFailedError as e:
            if e.classification.retryable:
                self._apply_reconnect_policy(handle, e.classification)
            elif not e.classification.requires_operator:
                self._publish_status(
                    "manual_reconnect_required",
                    handle,
                    category=e.classification.category.value,
                    reason=e.classification.message,
                )
        except Exception as e:
            logger.error(f"Unexpected error during auto-reconnect to @{handle}: {e}", exc_info=True)
            if self.session.handle != handle:
                return
            classification = build_classification(ErrorCategory.UNKNOWN, f"Auto-reconnect failed: {e}")
            self._teardown(keep_reconnect=True)
            self.diagnostics.record_attempt(
                handle, False, classification.category.value, classification.message
            )
            self._publish_error(handle, classification)
            self._apply_reconnect_policy(handle, classification)

    # Message handling

    def _handle_message(self, raw: dict) -> None:
        normalized = self.normalizer.normalize(raw)
        if normalized is None:
            return

        if isinstance(normalized, StreamEnded):
            self._on_stream_ended(normalized)
            return

        if isinstance(normalized, RoomInfoUpdate):
            if self.start_tracker.apply_metadata(normalized.room_info, self._clock()):
                self._on_start_corrected()
            return

        if self.dedup.is_duplicate(normalized):
            return

        if normalized.upstream_timestamp and self.start_tracker.observe_event(normalized.timestamp):
            self._on_start_corrected()

        published = self.stats.apply(normalized)
        if published is not None:
            self._events.publish(published)

    def _on_start_corrected(self) -> None:
        start = self.start_tracker.start_time
        self.session.stream_start_time = start
        self.session.last_persisted_start_time = start
        self._publish_status(
            "stream_start_updated",
            self.session.handle,
            stream_start_time=start.isoformat() if start else None,
            source=self.start_tracker.source.value if self.start_tracker.source else None,
        )

    def _on_stream_ended(self, ended: StreamEnded) -> None:
        handle = self.session.handle
        logger.info(f"Stream of @{handle} ended")
        self.diagnostics.record_attempt(handle, False, ErrorCategory.NOT_LIVE.value, ended.reason)
        self._publish_status("stream_ended", handle, reason=ended.reason)
        self.disconnect(clear_handle=True, reason=ended.reason)

    def _on_transport_closed(self, error: Optional[BaseException]) -> None:
        handle = self.session.handle
        if error is None:
            classification = build_classification(
                ErrorCategory.UNKNOWN, "Connection closed unexpectedly"
            )
        else:
            classification = classify_error(error)

        logger.warning(
            f"Connection to @{handle} lost [{classification.category.value}]: {classification.message}"
        )
        self._teardown()
        self.diagnostics.record_attempt(
            handle, False, classification.category.value, classification.message
        )
        self._events.publish(DisconnectedEvent(handle=handle, reason=classification.message))
        self._publish_error(handle, classification)
        self._apply_reconnect_policy(handle, classification)

    def _apply_reconnect_policy(self, handle: str, classification: ErrorClassification) -> None:
        if classification.requires_operator:
            self.session.state = ConnectionState.AUTH_ERROR
            logger.error(f"Authentication/configuration error for @{handle}; manual reconnect required")
            return

        max_attempts = self.settings.max_auto_reconnects
        if not classification.retryable or self.session.reconnect_attempt_count >= max_attempts:
            self.session.state = ConnectionState.DISCONNECTED
            if classification.retryable:
                logger.error(f"Max auto-reconnect attempts ({max_attempts}) reached for @{handle}")
            self._publish_status(
                "manual_reconnect_required",
                handle,
                category=classification.category.value,
                reason=classification.message,
                attempts=self.session.reconnect_attempt_count,
            )
            return

        self.session.reconnect_attempt_count += 1
        delay = self.settings.reconnect_delay_seconds
        if classification.category == ErrorCategory.RATE_LIMITED:
            delay = max(delay, self.settings.rate_limit_cooldown_seconds)

        self.session.state = ConnectionState.RECONNECTING
        logger.info(
            f"Auto-reconnect {self.session.reconnect_attempt_count}/{max_attempts} "
            f"for @{handle} in {delay:g}s"
        )
        self._publish_status(
            "reconnecting",
            handle,
            attempt=self.session.reconnect_attempt_count,
            max_attempts=max_attempts,
            delay=delay,
        )
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(handle, delay, self._generation)
        )

    # Publishing

    def _publish_status(self, status: str, handle: Optional[str], **detail) -> None:
        self._status.publish(StatusUpdate(status=status, handle=handle, detail=detail))

    def _publish_error(self, handle: Optional[str], classification: ErrorClassification) -> None:
        self._events.publish(
            ErrorEvent(
                handle=handle,
                category=classification.category.value,
                message=classification.message,
                suggestion=classification.suggestion,
                retryable=classification.retryable,
            )
        )
        self._publish_status(
            "auth_error" if classification.requires_operator else "error",
            handle,
            category=classification.category.value,
            suggestion=classification.suggestion,
        )


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def _room_id_from(room_info: Optional[dict]) -> Optional[str]:
    if not isinstance(room_info, dict):
        return None
    value = room_info.get("roomId") or room_info.get("room_id") or room_info.get("id")
    return str(value) if value is not None else None
