"""Integration test fixtures and utilities.

Provides shared fixtures for:
- A scripted SPA server speaking the WebSocket SPA protocol
- A switchboard server (transport + router) on an ephemeral port
- WebSocket clients acting as sidebar and chat windows
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import pytest_asyncio
import websockets
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.server import Server, ServerConnection

from switchboard.config import SwitchboardConfig
from switchboard.context import WorkerContext
from switchboard.router import Router
from switchboard.server import serve_port
from switchboard.transport.websocket_transport import WebSocketTransport

logger = logging.getLogger(__name__)


# ============================================================================
# Message helpers
# ============================================================================


async def send_envelope(ws: ClientConnection, topic: str, data: Any = None) -> None:
    message: dict[str, Any] = {"topic": topic}
    if data is not None:
        message["data"] = data
    await ws.send(json.dumps(message))


async def receive_topic(ws: ClientConnection, topic: str, timeout_s: float = 5.0) -> Any:
    """Read envelopes until one with ``topic`` arrives and return its data.

    Raises:
        TimeoutError: If no such envelope arrives in time
    """
    async with asyncio.timeout(timeout_s):
        while True:
            envelope = json.loads(await ws.recv())
            if envelope["topic"] == topic:
                return envelope["data"]
            logger.debug("Skipping envelope", extra={"topic": envelope["topic"]})


# ============================================================================
# Scripted SPA server
# ============================================================================


class FakeSPAServer:
    """SPA server answering sign-in and presence requests.

    Signs in any credentials except ``{"password": "wrong"}``, answers
    ``presence-request`` with a one-entry roster and records every message.
    """

    def __init__(self) -> None:
        self.received: list[dict[str, Any]] = []
        self.connections: set[ServerConnection] = set()
        self.server: Server | None = None

    @property
    def url(self) -> str:
        assert self.server is not None
        port = next(iter(self.server.sockets)).getsockname()[1]
        return f"ws://127.0.0.1:{port}"

    def topics(self) -> list[str]:
        return [message["topic"] for message in self.received]

    async def handler(self, ws: ServerConnection) -> None:
        self.connections.add(ws)
        try:
            async for raw in ws:
                message = json.loads(raw)
                self.received.append(message)
                await self._answer(ws, message["topic"], message.get("data"))
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            self.connections.discard(ws)

    async def _answer(self, ws: ServerConnection, topic: str, data: Any) -> None:
        if topic == "signin":
            if isinstance(data, dict) and data.get("password") == "wrong":
                await ws.send(json.dumps({"topic": "error", "data": "invalid credentials"}))
            else:
                reply = {"nick": data.get("email"), "capabilities": ["call"]}
                await ws.send(json.dumps({"topic": "connected", "data": reply}))
        elif topic == "presence-request":
            await ws.send(json.dumps({"topic": "users", "data": [{"nick": "bob"}]}))

    async def push(self, topic: str, data: Any) -> None:
        for ws in list(self.connections):
            await ws.send(json.dumps({"topic": topic, "data": data}))

    async def drop(self, code: int = 1011) -> None:
        for ws in list(self.connections):
            await ws.close(code=code, reason="server going away")

    async def wait_for(self, topic: str, timeout_s: float = 5.0) -> dict[str, Any]:
        async with asyncio.timeout(timeout_s):
            while True:
                for message in self.received:
                    if message["topic"] == topic:
                        return message
                await asyncio.sleep(0.01)


@pytest_asyncio.fixture
async def spa_server() -> AsyncIterator[FakeSPAServer]:
    fake = FakeSPAServer()
    fake.server = await websockets.serve(fake.handler, "127.0.0.1", 0)
    try:
        yield fake
    finally:
        fake.server.close()
        await fake.server.wait_closed()


# ============================================================================
# Switchboard server
# ============================================================================


@dataclass
class RunningSwitchboard:
    context: WorkerContext
    router: Router
    transport: WebSocketTransport

    @property
    def url(self) -> str:
        return f"ws://127.0.0.1:{self.transport.bound_port}"


@pytest_asyncio.fixture
async def switchboard() -> AsyncIterator[RunningSwitchboard]:
    """Run transport, router and accept loop the way ``start_server`` does."""
    config = SwitchboardConfig()
    context = WorkerContext(config)
    router = Router(context)
    transport = WebSocketTransport(host="127.0.0.1", port=0, max_connections=10)
    await transport.start()

    port_tasks: set[asyncio.Task[None]] = set()

    async def accept_loop() -> None:
        while True:
            port = await transport.accept_port()
            task = asyncio.create_task(serve_port(port, router))
            port_tasks.add(task)
            task.add_done_callback(port_tasks.discard)

    router_task = asyncio.create_task(router.run())
    accept_task = asyncio.create_task(accept_loop())
    try:
        yield RunningSwitchboard(context, router, transport)
    finally:
        accept_task.cancel()
        await transport.stop()
        await asyncio.gather(accept_task, *port_tasks, return_exceptions=True)
        router_task.cancel()
        await asyncio.gather(router_task, return_exceptions=True)
        router.close()
        await context.shutdown()


@pytest_asyncio.fixture
async def sidebar(switchboard: RunningSwitchboard) -> AsyncIterator[ClientConnection]:
    """Connected sidebar that already received worker-ready."""
    async with websockets.connect(switchboard.url) as ws:
        await send_envelope(ws, "sidebar-ready", {})
        await receive_topic(ws, "worker-ready")
        yield ws
