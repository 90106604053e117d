"""WebSocket signaling backend.

Connects to an SPA server at a ``ws://`` or ``wss://`` URL and exchanges
JSON envelopes ``{"topic": ..., "data": ...}`` with it.

Outbound topics: ``signin``, ``presence-request``, ``call-offer``,
``call-answer``, ``call-hangup``, ``ice-candidate``.
Inbound topics: ``connected``, ``users``, ``offer``, ``answer``, ``hangup``,
``ice-candidate``, ``presence-unavailable``, ``error``.
"""

import asyncio
import logging
from collections.abc import Sequence
from typing import Any
from urllib.parse import urlparse

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.protocol import State

from switchboard.errors import NORMAL_CLOSURE, SPAConnectionError, UnexpectedClose
from switchboard.spa import EventSink, SPABackend, SPAEventKind
from switchboard.transport.websocket_protocol import Envelope

logger = logging.getLogger(__name__)

# WebSocket close code used when the peer vanished without a close frame
ABNORMAL_CLOSURE = 1006

INBOUND_EVENTS: dict[str, SPAEventKind] = {
    "users": SPAEventKind.ROSTER,
    "offer": SPAEventKind.INCOMING_OFFER,
    "answer": SPAEventKind.INCOMING_ANSWER,
    "hangup": SPAEventKind.INCOMING_HANGUP,
    "ice-candidate": SPAEventKind.INCOMING_ICE_CANDIDATE,
    "presence-unavailable": SPAEventKind.PRESENCE_UNAVAILABLE,
    "error": SPAEventKind.ERROR,
}

DEFAULT_SCHEMES = ("ws", "wss")


class WebSocketSPABackend(SPABackend):
    """SPA backend speaking JSON envelopes over a WebSocket."""

    def __init__(
        self,
        src: str,
        emit: EventSink,
        connect_timeout_s: float = 10.0,
        max_message_bytes: int = 2**20,
    ) -> None:
        """Initialize backend.

        Args:
            src: WebSocket URL of the SPA server
            emit: Event sink provided by the adapter
            connect_timeout_s: Upper bound for opening the socket and sign-in
            max_message_bytes: Maximum inbound message size
        """
        super().__init__(src, emit)
        self._connect_timeout_s = connect_timeout_s
        self._max_message_bytes = max_message_bytes
        self._websocket: ClientConnection | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._closing = False

    @property
    def is_connected(self) -> bool:
        return self._websocket is not None and self._websocket.state == State.OPEN

    async def connect(self, credentials: Any) -> dict[str, Any]:
        try:
            async with asyncio.timeout(self._connect_timeout_s):
                self._websocket = await websockets.connect(
                    self.src, max_size=self._max_message_bytes
                )
                await self._send("signin", credentials)
                reply = Envelope.model_validate_json(await self._websocket.recv())
        except TimeoutError as e:
            await self._abort()
            raise SPAConnectionError(f"Timed out connecting to {self.src}") from e
        except (OSError, websockets.exceptions.WebSocketException) as e:
            await self._abort()
            raise SPAConnectionError(f"Cannot connect to {self.src}: {e}") from e
        except ValueError as e:
            await self._abort()
            raise SPAConnectionError(f"Invalid sign-in reply from {self.src}: {e}") from e

        if reply.topic == "error":
            await self._abort()
            raise SPAConnectionError(f"Sign-in rejected by {self.src}: {reply.data}")
        if reply.topic != "connected":
            await self._abort()
            raise SPAConnectionError(f"Unexpected sign-in reply from {self.src}: {reply.topic}")

        self._reader_task = asyncio.create_task(
            self._read_loop(self._websocket), name=f"spa-reader-{self.src}"
        )
        logger.info("Connected to SPA server", extra={"src": self.src})
        return reply.data if isinstance(reply.data, dict) else {}

    async def disconnect(self) -> None:
        self._closing = True
        if self._websocket is not None:
            await self._websocket.close(code=NORMAL_CLOSURE)
        if self._reader_task is not None:
            await self._reader_task
            self._reader_task = None

    async def presence_request(self) -> None:
        await self._send("presence-request", {})

    async def call_offer(self, data: dict[str, Any]) -> None:
        await self._send("call-offer", data)

    async def call_answer(self, data: dict[str, Any]) -> None:
        await self._send("call-answer", data)

    async def call_hangup(self, data: dict[str, Any]) -> None:
        await self._send("call-hangup", data)

    async def ice_candidate(self, data: dict[str, Any]) -> None:
        await self._send("ice-candidate", data)

    async def _send(self, topic: str, data: Any) -> None:
        if self._websocket is None:
            raise SPAConnectionError(f"Not connected to {self.src}")
        try:
            await self._websocket.send(Envelope(topic=topic, data=data).model_dump_json())
        except websockets.exceptions.ConnectionClosed as e:
            raise SPAConnectionError(f"SPA connection closed: {e}") from e

    async def _abort(self) -> None:
        if self._websocket is not None:
            await self._websocket.close()
            self._websocket = None

    async def _read_loop(self, websocket: ClientConnection) -> None:
        try:
            async for raw_message in websocket:
                self._handle_message(raw_message)
        except websockets.exceptions.ConnectionClosed:
            pass

        code = websocket.close_code or ABNORMAL_CLOSURE
        if self._closing:
            code = NORMAL_CLOSURE
        if code != NORMAL_CLOSURE:
            logger.warning(str(UnexpectedClose(code, websocket.close_reason or "")))
        self._emit(SPAEventKind.DISCONNECTED, {"code": code})

    def _handle_message(self, raw_message: str | bytes) -> None:
        try:
            envelope = Envelope.model_validate_json(raw_message)
        except ValueError as e:
            logger.error("Invalid message from SPA server", extra={"src": self.src, "error": str(e)})
            return

        kind = INBOUND_EVENTS.get(envelope.topic)
        if kind is None:
            logger.warning(
                "Unknown SPA topic", extra={"src": self.src, "topic": envelope.topic}
            )
            return
        self._emit(kind, envelope.data)


def create_backend(
    src: str,
    emit: EventSink,
    allowed_schemes: Sequence[str] = DEFAULT_SCHEMES,
    connect_timeout_s: float = 10.0,
) -> SPABackend:
    """Build the backend for ``src``.

    Raises:
        SPAConnectionError: If the URL scheme is not allowed
    """
    scheme = urlparse(src).scheme
    if scheme not in allowed_schemes:
        raise SPAConnectionError(
            f"Unsupported SPA source {src!r}: scheme must be one of {list(allowed_schemes)}"
        )
    return WebSocketSPABackend(src, emit, connect_timeout_s=connect_timeout_s)
