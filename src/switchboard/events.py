"""Typed publish/subscribe for router state objects.

Each observable component declares its event kinds as an ``Enum`` and owns an
``EventEmitter`` parameterized by that enum. Listeners register per kind and
receive the payload the component emits.
"""

import logging
from collections.abc import Callable
from enum import Enum
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Enum)
Listener = Callable[[Any], None]


class EventEmitter(Generic[K]):
    """Registers listeners per event kind and delivers emitted payloads.

    A listener that raises does not prevent delivery to the remaining
    listeners; the failure is logged.

    Example:
        ```python
        class RosterEvent(Enum):
            CHANGED = "changed"

        events: EventEmitter[RosterEvent] = EventEmitter(RosterEvent)
        unsubscribe = events.subscribe(RosterEvent.CHANGED, print)
        events.emit(RosterEvent.CHANGED, ["alice"])
        unsubscribe()
        ```
    """

    def __init__(self, kinds: type[K]) -> None:
        """Initialize emitter.

        Args:
            kinds: Enum class enumerating the events this emitter may publish
        """
        self._kinds = kinds
        self._listeners: dict[K, list[Listener]] = {}

    def _check_kind(self, kind: K) -> None:
        if not isinstance(kind, self._kinds):
            raise TypeError(f"{kind!r} is not a {self._kinds.__name__}")

    def subscribe(self, kind: K, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for ``kind``.

        Returns:
            Callable that removes the registration
        """
        self._check_kind(kind)
        self._listeners.setdefault(kind, []).append(listener)
        return lambda: self.unsubscribe(kind, listener)

    def unsubscribe(self, kind: K, listener: Listener) -> None:
        listeners = self._listeners.get(kind)
        if not listeners:
            return
        try:
            listeners.remove(listener)
        except ValueError:
            return
        if not listeners:
            self._listeners.pop(kind, None)

    def emit(self, kind: K, payload: Any = None) -> None:
        """Deliver ``payload`` to every listener registered for ``kind``."""
        self._check_kind(kind)
        for listener in list(self._listeners.get(kind, [])):
            try:
                listener(payload)
            except Exception:
                logger.exception(
                    "Event listener failed",
                    extra={"event": kind.value, "listener": repr(listener)},
                )

    def listener_count(self, kind: K) -> int:
        return len(self._listeners.get(kind, []))
