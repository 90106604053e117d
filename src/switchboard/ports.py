"""Port abstraction and registry for connected UI surfaces.

A port is one addressable channel to a UI surface (the roster sidebar or a
chat window). The registry tracks the roster ports that receive broadcasts.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator
from enum import Enum
from typing import Any

from switchboard.errors import PortClosedError, PortNotFound
from switchboard.events import EventEmitter

logger = logging.getLogger(__name__)


class Port(ABC):
    """Base class for transport-specific ports.

    Each transport provides a concrete port type. ``post_event`` must never
    block: implementations queue the event and deliver it asynchronously.
    """

    @property
    @abstractmethod
    def port_id(self) -> str:
        """Opaque identifier assigned by the host channel."""

    @property
    @abstractmethod
    def is_alive(self) -> bool:
        """Check if the port can still deliver events."""

    @abstractmethod
    def post_event(self, topic: str, data: Any = None) -> None:
        """Queue an event for delivery to the UI surface.

        Args:
            topic: Outbound topic
            data: JSON-compatible payload

        Raises:
            PortClosedError: If the port is no longer live
        """

    @abstractmethod
    async def close(self) -> None:
        """Close the underlying channel."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.port_id}>"


class PortEvent(Enum):
    """Observable registry events."""

    ADDED = "added"
    REMOVED = "removed"


class PortRegistry:
    """Registry of live ports keyed by port id.

    A registered port is assumed live; removal is the only way to stop
    delivering to it. Removal is published as ``PortEvent.REMOVED`` with the
    removed port as payload.

    Thread-safety: NOT thread-safe. Mutated only by router handlers.
    """

    def __init__(self) -> None:
        self._ports: dict[str, Port] = {}
        self.events: EventEmitter[PortEvent] = EventEmitter(PortEvent)

    def add(self, port: Port) -> None:
        """Register a port, replacing any port with the same id."""
        replaced = self._ports.get(port.port_id)
        self._ports[port.port_id] = port
        if replaced is not None and replaced is not port:
            logger.info("Port replaced", extra={"port_id": port.port_id})
        self.events.emit(PortEvent.ADDED, port)

    def remove(self, port_id: str) -> Port:
        """Remove and return a port.

        Raises:
            PortNotFound: If no port is registered under ``port_id``
        """
        try:
            port = self._ports.pop(port_id)
        except KeyError:
            raise PortNotFound(port_id) from None

        logger.debug("Port removed", extra={"port_id": port_id})
        self.events.emit(PortEvent.REMOVED, port)
        return port

    def find(self, port_id: str) -> Port | None:
        return self._ports.get(port_id)

    def broadcast(self, topic: str, data: Any = None) -> int:
        """Deliver an event to every registered port.

        Delivery to one port never prevents delivery to the others. A port
        that turns out to be closed is removed from the registry.

        Args:
            topic: Outbound topic
            data: JSON-compatible payload

        Returns:
            Number of ports the event was delivered to
        """
        delivered = 0
        for port in list(self._ports.values()):
            try:
                port.post_event(topic, data)
                delivered += 1
            except PortClosedError:
                logger.info(
                    "Dropping closed port during broadcast",
                    extra={"port_id": port.port_id, "topic": topic},
                )
                if self._ports.get(port.port_id) is port:
                    self.remove(port.port_id)
            except Exception as e:
                logger.error(
                    "Failed to deliver broadcast",
                    extra={"port_id": port.port_id, "topic": topic, "error": str(e)},
                )

        logger.debug("Broadcast", extra={"topic": topic, "delivered": delivered})
        return delivered

    def __len__(self) -> int:
        return len(self._ports)

    def __contains__(self, port_id: object) -> bool:
        return port_id in self._ports

    def __iter__(self) -> Iterator[Port]:
        return iter(list(self._ports.values()))
