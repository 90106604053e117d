"""Current user presence and roster state."""

import logging
from collections.abc import Iterable
from enum import Enum
from typing import Any

from switchboard.events import EventEmitter
from switchboard.payloads import Contact, UserEntry

logger = logging.getLogger(__name__)


class Presence(str, Enum):
    """Presence of the signed-in user."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class UserEvent(Enum):
    CHANGED = "changed"


class RosterEvent(Enum):
    CHANGED = "changed"


class CurrentUser:
    """The single user record of a worker.

    ``name`` is empty while signed out. Every effective change publishes
    ``UserEvent.CHANGED`` with the user itself as payload.
    """

    def __init__(self) -> None:
        self.name: str = ""
        self.presence: Presence = Presence.DISCONNECTED
        self.events: EventEmitter[UserEvent] = EventEmitter(UserEvent)

    @property
    def is_signed_in(self) -> bool:
        return bool(self.name)

    def set(self, name: str | None = None, presence: Presence | None = None) -> bool:
        """Update name and/or presence.

        Args:
            name: New identity, or None to keep the current one
            presence: New presence, or None to keep the current one

        Returns:
            True if anything changed
        """
        changed = False
        if name is not None and name != self.name:
            self.name = name
            changed = True
        if presence is not None and presence != self.presence:
            old_presence = self.presence
            self.presence = presence
            changed = True
            logger.info(
                "User presence transition",
                extra={
                    "user": self.name,
                    "from_presence": old_presence.value,
                    "to_presence": presence.value,
                },
            )

        if changed:
            self.events.emit(UserEvent.CHANGED, self)
        return changed

    def reset(self) -> bool:
        """Sign the user out: empty name, disconnected."""
        return self.set(name="", presence=Presence.DISCONNECTED)

    def to_wire(self) -> dict[str, Any]:
        return {"nick": self.name, "presence": self.presence.value}


class Roster:
    """Set of peers visible to the user.

    The roster is replaced wholesale on every update, last write wins. The
    wire form is sorted by nick so broadcasts are deterministic.
    """

    def __init__(self) -> None:
        self._entries: dict[str, UserEntry] = {}
        self.source: str | None = None
        self.events: EventEmitter[RosterEvent] = EventEmitter(RosterEvent)

    def replace(self, entries: Iterable[UserEntry], source: str | None = None) -> None:
        """Replace the whole roster and publish ``RosterEvent.CHANGED``.

        Args:
            entries: New roster entries (duplicates collapse by nick)
            source: Name of the roster source, None for the SPA
        """
        self._entries = {entry.nick: entry for entry in entries}
        self.source = source
        logger.info(
            "Roster replaced",
            extra={"source": source or "spa", "size": len(self._entries)},
        )
        self.events.emit(RosterEvent.CHANGED, self)

    def update_from_source(self, contacts: Iterable[Contact], source: str) -> None:
        """Replace the roster with contacts imported from ``source``."""
        self.replace((UserEntry(nick=c.username) for c in contacts), source=source)

    def reset(self) -> None:
        """Empty the roster. Publishes only if it was not already empty."""
        was_empty = not self._entries
        self._entries = {}
        self.source = None
        if not was_empty:
            self.events.emit(RosterEvent.CHANGED, self)

    def to_wire(self) -> list[dict[str, Any]]:
        return [{"nick": nick} for nick in sorted(self._entries)]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, nick: object) -> bool:
        return nick in self._entries
