"""Base transport abstraction for UI surface connections.

Defines the interface a transport implements to hand the router one Port per
connected UI surface.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from switchboard.ports import Port
from switchboard.transport.websocket_protocol import Envelope


class TransportPort(Port):
    """Port whose inbound messages are read from the transport."""

    @abstractmethod
    def receive(self) -> AsyncIterator[Envelope]:
        """Receive envelopes from the UI surface.

        Yields envelopes in the order the surface sent them and returns when
        the connection closes.
        """

    @abstractmethod
    async def sender_loop(self) -> None:
        """Deliver queued outbound events until the port closes."""


class Transport(ABC):
    """Base transport implementation.

    Manages the lifecycle of a transport server and creates ports for
    incoming connections.
    """

    @abstractmethod
    async def start(self) -> None:
        """Start the transport server.

        Raises:
            RuntimeError: If the transport fails to start
            OSError: If port binding fails (for network transports)
        """

    @abstractmethod
    async def stop(self) -> None:
        """Stop the transport server and close every open port."""

    @abstractmethod
    async def accept_port(self) -> TransportPort:
        """Wait for the next connection and return its port.

        Raises:
            RuntimeError: If the transport is not running
        """

    @property
    @abstractmethod
    def transport_type(self) -> str:
        """Transport type identifier (e.g., 'websocket')."""

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Check if the transport server is currently running."""
