"""Unit tests for the relay transport and frame parsing."""
import json
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import pytest
from websockets.exceptions import InvalidHandshake

from livefeed.ingest.errors import TransportClosed, TransportError
from livefeed.ingest.transport import WebcastRelayTransport, parse_frame


class FakeWebSocket:
    def __init__(self, frames, close_code=None, close_reason=""):
        self.frames = list(frames)
        self.close_code = close_code
        self.close_reason = close_reason
        self.closed = False

    async def recv(self):
        return self.frames.pop(0)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.frames:
            raise StopAsyncIteration
        return self.frames.pop(0)

    async def close(self):
        self.closed = True


@pytest.mark.unit
class TestParseFrame:
    def test_single_message(self):
        assert parse_frame('{"type": "chat", "data": {"comment": "hi"}}') == [
            {"type": "chat", "data": {"comment": "hi"}}
        ]

    def test_batch_message(self):
        frame = json.dumps({"messages": [{"type": "like"}, {"type": "gift"}, "junk"]})
        assert parse_frame(frame) == [{"type": "like"}, {"type": "gift"}]

    def test_bytes_frame(self):
        assert parse_frame(b'{"type": "follow"}') == [{"type": "follow"}]

    def test_invalid_json_is_dropped(self):
        assert parse_frame("{nope") == []
        assert parse_frame("42") == []


@pytest.mark.unit
@pytest.mark.asyncio
class TestWebcastRelayTransport:
    async def test_open_returns_room_info_and_buffers_other_messages(self, test_settings, monkeypatch):
        first = json.dumps(
            {
                "messages": [
                    {"type": "roomInfo", "data": {"roomInfo": {"create_time": 1714560000}}},
                    {"type": "chat", "data": {"comment": "early"}},
                ]
            }
        )
        ws = FakeWebSocket([first, '{"type": "like", "data": {}}'], close_code=1000)
        connect = AsyncMock(return_value=ws)
        monkeypatch.setattr("livefeed.ingest.transport.websockets.connect", connect)

        transport = WebcastRelayTransport(test_settings)
        room_info = await transport.open("alice", room_id="123", api_key="key-0123456789")

        assert room_info == {"create_time": 1714560000}
        url = connect.call_args.args[0]
        params = parse_qs(urlparse(url).query)
        assert params == {"uniqueId": ["alice"], "apiKey": ["key-0123456789"], "roomId": ["123"]}
        assert connect.call_args.kwargs["ping_interval"] == 20

        received = [message async for message in transport.messages()]
        assert [m["type"] for m in received] == ["chat", "like"]

        error = transport.closed_error()
        assert isinstance(error, TransportClosed)
        assert error.code == 1000

    async def test_local_close_reports_no_error(self, test_settings, monkeypatch):
        ws = FakeWebSocket(['{"type": "roomInfo", "data": {}}'])
        monkeypatch.setattr("livefeed.ingest.transport.websockets.connect", AsyncMock(return_value=ws))

        transport = WebcastRelayTransport(test_settings)
        await transport.open("alice", room_id=None, api_key="key-0123456789")
        await transport.close()

        assert ws.closed is True
        assert transport.closed_error() is None

    async def test_handshake_rejection_raises_transport_error(self, test_settings, monkeypatch):
        rejection = InvalidHandshake("server rejected WebSocket connection: HTTP 401")
        rejection.status_code = 401
        monkeypatch.setattr(
            "livefeed.ingest.transport.websockets.connect", AsyncMock(side_effect=rejection)
        )

        transport = WebcastRelayTransport(test_settings)
        with pytest.raises(TransportError) as exc_info:
            await transport.open("alice", room_id=None, api_key="key-0123456789")
        assert exc_info.value.status_code == 401
