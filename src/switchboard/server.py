"""Switchboard server with WebSocket transport and SPA integration.

Main server implementation that:
1. Starts the WebSocket transport for UI surfaces
2. Provides HTTP health check endpoints
3. Accepts ports and feeds their messages to the router
4. Runs the router loop that owns all presence and call state
"""

import argparse
import asyncio
import logging
from pathlib import Path

from aiohttp.web import Application, AppRunner, TCPSite

from switchboard.config import SwitchboardConfig
from switchboard.context import WorkerContext
from switchboard.health import setup_health_routes
from switchboard.router import Router
from switchboard.spa import BackendFactory
from switchboard.transport.base import TransportPort
from switchboard.transport.websocket_transport import WebSocketTransport

logger = logging.getLogger(__name__)


async def serve_port(port: TransportPort, router: Router) -> None:
    """Feed one port's messages to the router until it disconnects.

    Runs the port's sender loop alongside, and posts ``port-closing`` for the
    port once its connection ends so the router forgets it.

    Args:
        port: Connected UI surface
        router: Router receiving the messages
    """
    sender_task = asyncio.create_task(port.sender_loop(), name=f"sender-{port.port_id}")
    try:
        async for envelope in port.receive():
            router.post(port, envelope.topic, envelope.data)
    except Exception as e:
        logger.exception("Port receive loop failed", extra={"port_id": port.port_id, "error": str(e)})
    finally:
        router.post(port, "port-closing", {})
        await port.close()
        sender_task.cancel()
        await asyncio.gather(sender_task, return_exceptions=True)
        logger.info("Port served", extra={"port_id": port.port_id})


async def start_server(config_path: Path, backend_factory: BackendFactory | None = None) -> None:
    """Start switchboard server.

    Initializes all components (config, context, router, transport, health
    checks) and runs until interrupted.

    Args:
        config_path: Path to YAML config file
        backend_factory: Optional SPA backend factory (for testing)

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If configuration is invalid
    """
    # Load config
    config = SwitchboardConfig.from_yaml(config_path)

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("Loaded configuration", extra={"config_path": str(config_path)})

    context = WorkerContext(config, backend_factory=backend_factory)
    router = Router(context)

    # Initialize WebSocket transport
    ws_config = config.transport.websocket
    transport = WebSocketTransport(
        host=ws_config.host,
        port=ws_config.port,
        max_connections=ws_config.max_connections,
        queue_size=ws_config.outbound_queue_size,
        max_message_bytes=ws_config.max_message_bytes,
    )

    await transport.start()
    logger.info("WebSocket transport started", extra={"port": transport.bound_port})

    # Start health check HTTP server
    runner: AppRunner | None = None
    if config.health.enabled:
        health_app = Application()
        setup_health_routes(health_app, context, transport)

        runner = AppRunner(health_app)
        await runner.setup()
        site = TCPSite(runner, config.health.host, config.health.port)
        await site.start()
        logger.info("Health check server started", extra={"port": config.health.port})

    router_task = asyncio.create_task(router.run(), name="router")
    port_tasks: set[asyncio.Task[None]] = set()
    try:
        logger.info("Switchboard server ready")

        while True:
            port = await transport.accept_port()
            logger.info("New port accepted", extra={"port_id": port.port_id})
            task = asyncio.create_task(serve_port(port, router), name=f"port-{port.port_id}")
            port_tasks.add(task)
            task.add_done_callback(port_tasks.discard)

    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    except KeyboardInterrupt:
        logger.info("Received interrupt signal")
    except Exception as e:
        logger.exception("Server error", extra={"error": str(e)})
    finally:
        logger.info("Shutting down switchboard server")

        # Stop accepting UI connections
        await transport.stop()
        logger.info("WebSocket transport stopped")

        if runner is not None:
            await runner.cleanup()
            logger.info("Health check server stopped")

        if port_tasks:
            logger.info("Waiting for ports to close", extra={"count": len(port_tasks)})
            try:
                async with asyncio.timeout(config.graceful_shutdown_timeout_s):
                    await asyncio.gather(*port_tasks, return_exceptions=True)
            except TimeoutError:
                logger.warning("Ports did not close in time", extra={"count": len(port_tasks)})

        router_task.cancel()
        await asyncio.gather(router_task, return_exceptions=True)
        router.close()

        await context.shutdown()
        logger.info("Switchboard server stopped")


def main() -> None:
    """Entry point for switchboard server."""
    parser = argparse.ArgumentParser(description="Switchboard presence and call-signaling server")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs") / "switchboard.yaml",
        help="Path to switchboard config YAML file",
    )
    args = parser.parse_args()

    try:
        asyncio.run(start_server(args.config))
    except KeyboardInterrupt:
        logger.info("Switchboard server interrupted")


if __name__ == "__main__":
    main()
