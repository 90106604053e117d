"""Shared worker state threaded through every router handler."""

import functools
import logging

from switchboard.config import SwitchboardConfig
from switchboard.conversation import ConversationManager
from switchboard.errors import PortNotFound
from switchboard.ports import Port, PortEvent, PortRegistry
from switchboard.spa import BackendFactory, SPAManager
from switchboard.user import CurrentUser, Roster, RosterEvent

logger = logging.getLogger(__name__)


class WorkerContext:
    """Process-wide state of one switchboard worker.

    Created once at startup, handed to the Router, and torn down with
    ``shutdown()``. Only router handlers mutate it.
    """

    def __init__(
        self,
        config: SwitchboardConfig | None = None,
        backend_factory: BackendFactory | None = None,
    ) -> None:
        """Initialize context.

        Args:
            config: Server configuration (defaults if None)
            backend_factory: SPA backend factory; the WebSocket backend
                restricted to ``config.spa`` settings if None
        """
        self.config = config or SwitchboardConfig()

        if backend_factory is None:
            from switchboard.spa_websocket import create_backend

            backend_factory = functools.partial(
                create_backend,
                allowed_schemes=self.config.spa.allowed_schemes,
                connect_timeout_s=self.config.spa.connect_timeout_s,
            )

        self.ports = PortRegistry()
        self.user = CurrentUser()
        self.roster = Roster()
        self.conversations = ConversationManager()
        self.spa = SPAManager(backend_factory)
        self._closed = False

        self.ports.events.subscribe(PortEvent.REMOVED, self._on_port_removed)
        self.roster.events.subscribe(RosterEvent.CHANGED, self._on_roster_changed)

    @property
    def is_closed(self) -> bool:
        return self._closed

    def close_port(self, port: Port) -> None:
        """Forget ``port``: unregister it and clear conversations bound to it."""
        try:
            self.ports.remove(port.port_id)
        except PortNotFound:
            logger.debug("Closing unregistered port", extra={"port_id": port.port_id})
            self.conversations.release_port(port)

    def reset_session(self) -> None:
        """Degrade to signed-out: clear user, roster and all conversations."""
        self.conversations.clear(notify=True)
        self.roster.reset()
        self.user.reset()

    async def shutdown(self) -> None:
        """Disable the SPA, end conversations and close every port."""
        if self._closed:
            return
        self._closed = True

        logger.info("Shutting down worker context")
        await self.spa.shutdown()
        self.conversations.clear(notify=True)
        for port in list(self.ports):
            await port.close()
            self.ports.remove(port.port_id)

    def _on_port_removed(self, port: Port) -> None:
        self.conversations.release_port(port)

    def _on_roster_changed(self, roster: Roster) -> None:
        self.ports.broadcast("users", roster.to_wire())
