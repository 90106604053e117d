"""WebSocket transport implementation.

Each WebSocket connection from a UI surface (sidebar or chat window) becomes
one ``WebSocketPort``. Outbound events are queued and written by a per-port
sender task so posting never blocks the router.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any

import websockets
from pydantic import ValidationError as PydanticValidationError
from websockets.asyncio.server import ServerConnection
from websockets.protocol import State

from switchboard.errors import PortClosedError
from switchboard.transport.base import Transport, TransportPort
from switchboard.transport.websocket_protocol import Envelope

logger = logging.getLogger(__name__)

# Close code sent to a UI surface that stopped draining its events
OVERFLOW_CLOSE_CODE = 1013


class WebSocketPort(TransportPort):
    """WebSocket-based port.

    Implements the Port interface for WebSocket connections, handling JSON
    envelope serialization.
    """

    def __init__(self, websocket: ServerConnection, port_id: str, queue_size: int = 100) -> None:
        """Initialize WebSocket port.

        Args:
            websocket: WebSocket connection
            port_id: Unique port identifier
            queue_size: Maximum number of undelivered outbound events
        """
        self._websocket = websocket
        self._port_id = port_id
        self._connected = True
        self._overflowed = False
        self._outbound: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)

        logger.info(
            "WebSocket port initialized",
            extra={"port_id": port_id, "remote": websocket.remote_address},
        )

    @property
    def port_id(self) -> str:
        return self._port_id

    @property
    def is_alive(self) -> bool:
        return self._connected and self._websocket.state == State.OPEN

    def post_event(self, topic: str, data: Any = None) -> None:
        """Queue an event for the UI surface.

        An event that does not fit the outbound queue closes the port.

        Raises:
            PortClosedError: If the connection is closed or falls behind
        """
        if not self.is_alive:
            raise PortClosedError(f"Port {self._port_id} is closed")

        message = Envelope(topic=topic, data={} if data is None else data).model_dump_json()
        try:
            self._outbound.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning(
                "Outbound queue full, closing port",
                extra={"port_id": self._port_id, "topic": topic},
            )
            self._connected = False
            self._overflowed = True
            raise PortClosedError(f"Port {self._port_id} fell behind and was closed") from None

    async def sender_loop(self) -> None:
        """Continuously write queued events to the socket.

        Runs for the lifetime of the port and returns once the connection is
        closed. A port closed for falling behind has its socket closed here.
        """
        try:
            while self.is_alive:
                try:
                    message = await asyncio.wait_for(self._outbound.get(), timeout=0.1)
                except TimeoutError:
                    continue

                await self._websocket.send(message)

            if self._overflowed:
                await self._websocket.close(code=OVERFLOW_CLOSE_CODE, reason="outbound queue full")

        except websockets.exceptions.ConnectionClosed:
            self._connected = False
        except asyncio.CancelledError:
            pass

    async def receive(self) -> AsyncIterator[Envelope]:
        """Receive envelopes from the UI surface.

        Malformed messages are answered with an ``error`` event to this port
        and skipped.

        Yields:
            Envelope: Next message from the UI surface
        """
        try:
            async for raw_message in self._websocket:
                try:
                    envelope = Envelope.model_validate_json(raw_message)
                except PydanticValidationError as e:
                    logger.error(
                        "Invalid message from UI surface",
                        extra={"port_id": self._port_id, "error": str(e)},
                    )
                    self._send_error(f"Invalid message: {e.errors()[0]['msg']}")
                    continue

                logger.debug(
                    "Message received",
                    extra={"port_id": self._port_id, "topic": envelope.topic},
                )
                yield envelope

        except websockets.exceptions.ConnectionClosed:
            logger.info("WebSocket port closed by client", extra={"port_id": self._port_id})
        finally:
            self._connected = False

    def _send_error(self, message: str) -> None:
        try:
            self.post_event("error", message)
        except PortClosedError:
            pass

    async def close(self) -> None:
        """Close the connection. Undelivered events are discarded."""
        if not self._connected:
            return

        logger.info("Closing WebSocket port", extra={"port_id": self._port_id})
        self._connected = False
        try:
            await self._websocket.close()
        except Exception as e:
            logger.warning(
                "Error during port close",
                extra={"port_id": self._port_id, "error": str(e)},
            )


class WebSocketTransport(Transport):
    """WebSocket transport server.

    Manages the WebSocket server lifecycle and creates ``WebSocketPort``
    instances for incoming connections.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 8080,
        max_connections: int = 100,
        queue_size: int = 100,
        max_message_bytes: int = 2**20,
    ) -> None:
        """Initialize WebSocket transport.

        Args:
            host: Bind host address
            port: Bind port (0 picks a free port)
            max_connections: Maximum concurrent connections
            queue_size: Outbound queue size per port
            max_message_bytes: Maximum inbound message size
        """
        self._host = host
        self._port = port
        self._max_connections = max_connections
        self._queue_size = queue_size
        self._max_message_bytes = max_message_bytes
        self._server: Any = None  # websockets.Server type
        self._running = False
        self._port_queue: asyncio.Queue[WebSocketPort] = asyncio.Queue()
        self._open_ports: dict[str, WebSocketPort] = {}

        logger.info(
            "WebSocket transport initialized",
            extra={"host": host, "port": port, "max_connections": max_connections},
        )

    @property
    def transport_type(self) -> str:
        return "websocket"

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def bound_port(self) -> int:
        """TCP port the server listens on (resolves ``port=0``)."""
        if self._server is None:
            return self._port
        return int(next(iter(self._server.sockets)).getsockname()[1])

    @property
    def connection_count(self) -> int:
        return len(self._open_ports)

    async def start(self) -> None:
        """Start the WebSocket server.

        Raises:
            RuntimeError: If the transport fails to start
            OSError: If port binding fails
        """
        if self._running:
            raise RuntimeError("WebSocket transport is already running")

        logger.info("Starting WebSocket server", extra={"host": self._host, "port": self._port})

        try:
            self._server = await websockets.serve(
                self._handle_connection,
                self._host,
                self._port,
                max_size=self._max_message_bytes,
            )
            self._running = True

            logger.info(
                "WebSocket server started",
                extra={"host": self._host, "port": self.bound_port},
            )

        except OSError as e:
            logger.error(
                "Failed to bind WebSocket server",
                extra={"host": self._host, "port": self._port, "error": str(e)},
            )
            raise
        except Exception as e:
            logger.error("Failed to start WebSocket server", extra={"error": str(e)})
            raise RuntimeError(f"Failed to start WebSocket transport: {e}") from e

    async def stop(self) -> None:
        if not self._running:
            return

        logger.info("Stopping WebSocket server")
        self._running = False

        for port in list(self._open_ports.values()):
            await port.close()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("WebSocket server stopped")

    async def accept_port(self) -> WebSocketPort:
        """Wait for the next connection and return its port.

        Raises:
            RuntimeError: If the transport is not running
        """
        if not self._running:
            raise RuntimeError("WebSocket transport is not running")

        return await self._port_queue.get()

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        port_id = f"ws-{uuid.uuid4().hex[:12]}"

        if len(self._open_ports) >= self._max_connections:
            logger.warning(
                "Connection limit reached, rejecting",
                extra={"port_id": port_id, "remote": websocket.remote_address},
            )
            await websocket.close(code=1013, reason="too many connections")
            return

        logger.info(
            "New WebSocket connection",
            extra={"port_id": port_id, "remote": websocket.remote_address},
        )

        port = WebSocketPort(websocket, port_id, queue_size=self._queue_size)
        self._open_ports[port_id] = port
        await self._port_queue.put(port)

        try:
            await websocket.wait_closed()
        finally:
            self._open_ports.pop(port_id, None)
            logger.info("WebSocket connection closed", extra={"port_id": port_id})
