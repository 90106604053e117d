"""Unit tests for WebSocket transport implementation.

Tests the envelope protocol, port event queuing and transport lifecycle.
"""

import asyncio
import json
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import ValidationError as PydanticValidationError
from websockets.protocol import State

from switchboard.errors import PortClosedError
from switchboard.ports import PortRegistry
from switchboard.transport.websocket_protocol import Envelope
from switchboard.transport.websocket_transport import WebSocketPort, WebSocketTransport


class TestEnvelope:
    """Test the JSON envelope model."""

    def test_envelope_defaults_data(self) -> None:
        """Test missing data defaults to an empty object."""
        envelope = Envelope.model_validate_json('{"topic": "sidebar-ready"}')

        assert envelope.topic == "sidebar-ready"
        assert envelope.data == {}

    def test_envelope_keeps_non_object_data(self) -> None:
        """Test data may be any JSON value (e.g. spa-disable carries a string)."""
        envelope = Envelope.model_validate_json('{"topic": "spa-disable", "data": "Talkilla"}')
        assert envelope.data == "Talkilla"

    def test_envelope_requires_topic(self) -> None:
        """Test a message without topic is invalid."""
        with pytest.raises(PydanticValidationError):
            Envelope.model_validate_json('{"data": {}}')

        with pytest.raises(PydanticValidationError):
            Envelope.model_validate_json('{"topic": ""}')


class TestWebSocketPort:
    """Test WebSocket port implementation."""

    @pytest.fixture
    def mock_websocket(self) -> MagicMock:
        """Create mock WebSocket connection."""
        ws = MagicMock()
        ws.state = State.OPEN
        ws.remote_address = ("127.0.0.1", 12345)
        ws.send = AsyncMock()
        ws.close = AsyncMock()
        return ws

    def test_port_initialization(self, mock_websocket: MagicMock) -> None:
        """Test port initialization."""
        port = WebSocketPort(mock_websocket, "ws-test")

        assert port.port_id == "ws-test"
        assert port.is_alive is True
        assert repr(port) == "<WebSocketPort ws-test>"

    @pytest.mark.asyncio
    async def test_post_event_is_sent_by_sender_loop(self, mock_websocket: MagicMock) -> None:
        """Test queued events are written by the sender loop in order."""
        port = WebSocketPort(mock_websocket, "ws-test")
        port.post_event("worker-ready", {})
        port.post_event("users", [{"nick": "bob"}])

        sender = asyncio.create_task(port.sender_loop())
        for _ in range(50):
            if mock_websocket.send.await_count >= 2:
                break
            await asyncio.sleep(0.01)
        await port.close()
        await sender

        sent = [json.loads(call.args[0]) for call in mock_websocket.send.await_args_list]
        assert sent == [
            {"topic": "worker-ready", "data": {}},
            {"topic": "users", "data": [{"nick": "bob"}]},
        ]

    def test_post_event_disconnected(self, mock_websocket: MagicMock) -> None:
        """Test posting to a closed connection raises PortClosedError."""
        mock_websocket.state = State.CLOSED
        port = WebSocketPort(mock_websocket, "ws-test")

        with pytest.raises(PortClosedError, match="is closed"):
            port.post_event("worker-ready", {})

    @pytest.mark.asyncio
    async def test_post_event_queue_full_closes_port(self, mock_websocket: MagicMock) -> None:
        """Test a full outbound queue kills the port rather than skipping signaling."""
        port = WebSocketPort(mock_websocket, "ws-test", queue_size=2)
        port.post_event("call-offer", {"peer": "bob"})
        port.post_event("ice-candidate", {"peer": "bob", "candidate": "c1"})

        with pytest.raises(PortClosedError, match="fell behind"):
            port.post_event("call-answer", {"peer": "bob"})

        assert port.is_alive is False
        with pytest.raises(PortClosedError, match="is closed"):
            port.post_event("call-hangup", {"peer": "bob"})

        await port.sender_loop()

        mock_websocket.send.assert_not_called()
        mock_websocket.close.assert_awaited_once_with(code=1013, reason="outbound queue full")

    def test_overflowing_sidebar_is_dropped_from_broadcasts(
        self, mock_websocket: MagicMock
    ) -> None:
        """Test the registry forgets a port that fell behind."""
        registry = PortRegistry()
        port = WebSocketPort(mock_websocket, "ws-test", queue_size=1)
        registry.add(port)

        registry.broadcast("users", [])
        registry.broadcast("users", [{"nick": "bob"}])

        assert "ws-test" not in registry

    @pytest.mark.asyncio
    async def test_receive_envelopes(self, mock_websocket: MagicMock) -> None:
        """Test receiving envelopes, answering malformed ones with error."""
        messages = [
            json.dumps({"topic": "sidebar-ready"}),
            "not json",
            json.dumps({"topic": "call-hangup", "data": {"peer": "bob"}}),
        ]

        async def mock_iter() -> AsyncGenerator[str]:
            for msg in messages:
                yield msg

        mock_websocket.__aiter__ = lambda self: mock_iter()

        port = WebSocketPort(mock_websocket, "ws-test")

        envelopes = [envelope async for envelope in port.receive()]

        assert [e.topic for e in envelopes] == ["sidebar-ready", "call-hangup"]
        assert envelopes[1].data == {"peer": "bob"}
        assert port._outbound.qsize() == 1
        error = json.loads(port._outbound.get_nowait())
        assert error["topic"] == "error"
        assert port.is_alive is False

    @pytest.mark.asyncio
    async def test_close_port(self, mock_websocket: MagicMock) -> None:
        """Test port close."""
        port = WebSocketPort(mock_websocket, "ws-test")

        await port.close()
        await port.close()

        assert port.is_alive is False
        mock_websocket.close.assert_called_once()


class TestWebSocketTransport:
    """Test WebSocket transport server."""

    def test_transport_initialization(self) -> None:
        """Test transport initialization."""
        transport = WebSocketTransport(host="0.0.0.0", port=8080, max_connections=100)  # noqa: S104

        assert transport.transport_type == "websocket"
        assert transport.is_running is False
        assert transport.connection_count == 0

    @pytest.mark.asyncio
    async def test_transport_start_stop(self) -> None:
        """Test transport start and stop."""
        transport = WebSocketTransport(host="127.0.0.1", port=0, max_connections=10)

        await transport.start()
        assert transport.is_running is True
        assert transport.bound_port > 0

        await transport.stop()
        assert transport.is_running is False

    @pytest.mark.asyncio
    async def test_transport_double_start(self) -> None:
        """Test starting transport twice."""
        transport = WebSocketTransport(host="127.0.0.1", port=0, max_connections=10)

        await transport.start()

        with pytest.raises(RuntimeError, match="already running"):
            await transport.start()

        await transport.stop()

    @pytest.mark.asyncio
    async def test_accept_port_not_running(self) -> None:
        """Test accepting a port when transport not running."""
        transport = WebSocketTransport(host="127.0.0.1", port=0, max_connections=10)

        with pytest.raises(RuntimeError, match="not running"):
            await transport.accept_port()
