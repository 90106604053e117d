"""Health check endpoints for the switchboard server.

Provides HTTP endpoints for load balancers and orchestration tools
(e.g., Docker healthcheck, Kubernetes liveness probe).
"""

import logging
import time
from typing import Any

from aiohttp import web

from switchboard.context import WorkerContext
from switchboard.transport.base import Transport

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """Health check handler.

    Reports:
    - UI transport status
    - Registered roster ports and open conversations
    - User presence and active SPA state
    - Service uptime
    """

    def __init__(self, context: WorkerContext, transport: Transport | None = None) -> None:
        """Initialize health check handler.

        Args:
            context: Worker state to report on
            transport: UI transport (optional; readiness requires it running)
        """
        self.context = context
        self.transport = transport
        self.start_time = time.time()

    def _transport_ok(self) -> bool:
        return self.transport is not None and self.transport.is_running

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK: Transport is running
            503 Service Unavailable: Transport is down or the context is closed

        Response format:
        {
            "status": "healthy" | "unhealthy",
            "uptime_seconds": float,
            "transport": bool,
            "ports": int,
            "conversations": int,
            "presence": str,
            "spa": {"name": str, "state": str} | null
        }
        """
        ctx = self.context
        healthy = self._transport_ok() and not ctx.is_closed

        adapter = ctx.spa.active
        spa: dict[str, Any] | None = None
        if adapter is not None:
            spa = {"name": adapter.name, "state": adapter.state.value}

        response_data = {
            "status": "healthy" if healthy else "unhealthy",
            "uptime_seconds": time.time() - self.start_time,
            "transport": self._transport_ok(),
            "ports": len(ctx.ports),
            "conversations": len(ctx.conversations),
            "presence": ctx.user.presence.value,
            "spa": spa,
        }

        logger.debug("Health check performed", extra={"status": response_data["status"]})

        return web.json_response(response_data, status=200 if healthy else 503)

    async def readiness_check(self, request: web.Request) -> web.Response:
        """Readiness check endpoint.

        Returns:
            200 OK: Transport accepts UI connections
            503 Service Unavailable: Transport is not running
        """
        ready = self._transport_ok() and not self.context.is_closed
        return web.json_response(
            {"status": "ready" if ready else "not_ready"},
            status=200 if ready else 503,
        )

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint.

        Returns OK if the process is running, whatever the transport state.

        Returns:
            200 OK: Service is alive
        """
        return web.json_response(
            {
                "status": "alive",
                "uptime_seconds": time.time() - self.start_time,
            },
            status=200,
        )


def setup_health_routes(
    app: web.Application,
    context: WorkerContext,
    transport: Transport | None = None,
) -> HealthCheckHandler:
    """Set up health check routes on application.

    Args:
        app: aiohttp Application instance
        context: Worker state to report on
        transport: UI transport (optional)

    Returns:
        The handler serving the routes
    """
    handler = HealthCheckHandler(context, transport=transport)

    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/readiness", handler.readiness_check)
    app.router.add_get("/liveness", handler.liveness_check)

    logger.info("Health check endpoints configured: /health, /readiness, /liveness")
    return handler
