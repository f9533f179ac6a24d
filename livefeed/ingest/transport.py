"""
Live transport

The supervisor talks to the platform through the ``LiveTransport``
protocol so tests can substitute an in-memory transport.
``WebcastRelayTransport`` is the production implementation: a websocket
to a signing relay that forwards decoded platform messages as JSON.
"""

import asyncio
import json
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from livefeed.config import Settings, settings as default_settings
from livefeed.ingest.errors import TransportClosed, TransportError
from livefeed.utils.logging import get_logger, mask_secret

logger = get_logger(__name__, category="connection")

# First-frame message types that carry room metadata
ROOM_INFO_TYPES = ("roomInfo", "WebcastRoomMessage", "connected")


class LiveTransport(Protocol):
    async def open(self, handle: str, *, room_id: Optional[str], api_key: str) -> Dict[str, Any]:
        """Open the session and return whatever room metadata is available."""
        ...

    def messages(self) -> AsyncIterator[Dict[str, Any]]:
        """Raw platform messages until the transport closes."""
        ...

    def closed_error(self) -> Optional[TransportClosed]:
        """Why the transport closed, or None for a locally requested close."""
        ...

    async def close(self) -> None:
        ...


def parse_frame(frame: Any) -> List[Dict[str, Any]]:
    """Decode one websocket frame into zero or more raw messages."""
    if isinstance(frame, bytes):
        frame = frame.decode("utf-8", errors="replace")
    try:
        payload = json.loads(frame)
    except (TypeError, json.JSONDecodeError) as e:
        logger.error(f"Failed to parse relay frame: {e}")
        return []

    if isinstance(payload, dict) and isinstance(payload.get("messages"), list):
        return [m for m in payload["messages"] if isinstance(m, dict)]
    if isinstance(payload, dict):
        return [payload]
    if isinstance(payload, list):
        return [m for m in payload if isinstance(m, dict)]

    logger.debug(f"Ignoring relay frame of type {type(payload).__name__}")
    return []


class WebcastRelayTransport:
    """Websocket connection to the relay for one broadcaster."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings
        self.ws = None
        self._pending: List[Dict[str, Any]] = []
        self._closing = False

    def _build_url(self, handle: str, room_id: Optional[str], api_key: str) -> str:
        params = {"uniqueId": handle, "apiKey": api_key}
        if room_id:
            params["roomId"] = room_id
        return f"{self.settings.relay_ws_url}?{urlencode(params)}"

    async def open(self, handle: str, *, room_id: Optional[str], api_key: str) -> Dict[str, Any]:
        url = self._build_url(handle, room_id, api_key)
        timeout = self.settings.connection_timeout_seconds
        logger.info(
            f"Connecting to relay for @{handle} (room={room_id or 'implicit'}, key={mask_secret(api_key)})"
        )

        self._closing = False
        try:
            self.ws = await websockets.connect(
                url,
                ping_interval=20,  # Send ping every 20 seconds
                ping_timeout=10,  # Wait 10 seconds for pong
                open_timeout=timeout,
            )
        except InvalidHandshake as e:
            response = getattr(e, "response", None)
            status = getattr(response, "status_code", None) or getattr(e, "status_code", None)
            raise TransportError(f"Relay rejected the connection: {e}", status_code=status) from e

        try:
            first = await asyncio.wait_for(
                self.ws.recv(), timeout=self.settings.first_frame_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.debug("No initial frame from relay; continuing without room metadata")
            return {}
        except ConnectionClosed as e:
            closed = self.closed_error()
            raise closed or TransportError(f"Relay closed during handshake: {e}") from e

        room_info: Dict[str, Any] = {}
        for message in parse_frame(first):
            if message.get("type") in ROOM_INFO_TYPES and not room_info:
                data = message.get("data") or {}
                room_info = data.get("roomInfo") if isinstance(data.get("roomInfo"), dict) else data
            else:
                self._pending.append(message)

        logger.info(f"Relay session open for @{handle}")
        return room_info

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        while self._pending:
            yield self._pending.pop(0)

        if self.ws is None:
            return

        try:
            async for frame in self.ws:
                for message in parse_frame(frame):
                    yield message
        except ConnectionClosed:
            logger.warning("Relay websocket connection closed")

    def closed_error(self) -> Optional[TransportClosed]:
        if self._closing or self.ws is None:
            return None
        code = getattr(self.ws, "close_code", None)
        reason = getattr(self.ws, "close_reason", None) or ""
        return TransportClosed(code=code, reason=reason)

    async def close(self) -> None:
        self._closing = True
        self._pending.clear()
        if self.ws is not None:
            try:
                await self.ws.close()
            except (ConnectionClosed, OSError) as e:
                logger.warning(f"Error closing relay websocket: {e}")
            self.ws = None
