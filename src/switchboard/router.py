"""Message router: the single entry point for UI and SPA messages.

Messages are queued in one mailbox and handled one at a time, so handlers
run to completion without locking. UI messages are dispatched by topic
through a ``HandlerRegistry``; SPA events by ``SPAEventKind``.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from switchboard.context import WorkerContext
from switchboard.errors import PortNotFound, ValidationError
from switchboard.ports import Port
from switchboard.spa import SPAEvent, SPAEventKind

logger = logging.getLogger(__name__)

Handler = Callable[[WorkerContext, Port | None, str, Any], None]
SPAHandler = Callable[[WorkerContext, SPAEvent], None]


@dataclass(frozen=True)
class PortMessage:
    """Message received from a UI surface."""

    source: Port | None
    topic: str
    data: Any = None


class HandlerRegistry:
    """Registry mapping topics to handler functions."""

    def __init__(self) -> None:
        self._routes: dict[str, Handler] = {}

    def register(self, topic: str, handler: Handler) -> None:
        """Register a topic handler, replacing any existing one."""
        self._routes[topic] = handler

    def register_batch(self, routes: dict[str, Handler]) -> None:
        for topic, handler in routes.items():
            self.register(topic, handler)

    def get_handler(self, topic: str) -> Handler | None:
        return self._routes.get(topic)

    @property
    def topics(self) -> list[str]:
        return sorted(self._routes)


def build_registry() -> HandlerRegistry:
    """Create a registry populated with the UI topic handlers."""
    from switchboard import handlers

    registry = HandlerRegistry()
    registry.register_batch(handlers.UI_HANDLERS)
    return registry


class Router:
    """Dispatches inbound messages against a ``WorkerContext``.

    Thread-safety: NOT thread-safe. Use from a single event loop; ``post``
    is the only entry point for other tasks.
    """

    def __init__(
        self,
        context: WorkerContext,
        registry: HandlerRegistry | None = None,
        spa_handlers: dict[SPAEventKind, SPAHandler] | None = None,
    ) -> None:
        """Initialize router and subscribe to SPA events.

        Args:
            context: Shared worker state
            registry: UI topic handlers (defaults to ``build_registry()``)
            spa_handlers: SPA event handlers (defaults to ``handlers.SPA_HANDLERS``)
        """
        if spa_handlers is None:
            from switchboard import handlers

            spa_handlers = handlers.SPA_HANDLERS

        self.context = context
        self.registry = registry or build_registry()
        self._spa_handlers = dict(spa_handlers)
        self._mailbox: asyncio.Queue[PortMessage | SPAEvent] = asyncio.Queue()
        self._unsubscribes = [
            context.spa.events.subscribe(kind, self._post_spa_event) for kind in SPAEventKind
        ]

    @property
    def pending(self) -> int:
        """Number of queued messages not yet dispatched."""
        return self._mailbox.qsize()

    def post(self, source: Port | None, topic: str, data: Any = None) -> None:
        """Queue a UI message for dispatch."""
        self._mailbox.put_nowait(PortMessage(source, topic, {} if data is None else data))

    def _post_spa_event(self, event: SPAEvent) -> None:
        self._mailbox.put_nowait(event)

    def dispatch(self, source: Port | None, topic: str, data: Any = None) -> None:
        """Run the handler for ``topic`` to completion.

        Unknown topics are ignored. Handler failures are logged and never
        propagate.
        """
        handler = self.registry.get_handler(topic)
        if handler is None:
            logger.debug("Ignoring unknown topic", extra={"topic": topic})
            return

        port_id = source.port_id if source is not None else None
        try:
            handler(self.context, source, topic, {} if data is None else data)
        except ValidationError as e:
            logger.warning(
                "Rejected invalid payload",
                extra={"topic": topic, "port_id": port_id, "field": e.field, "error": str(e)},
            )
        except PortNotFound as e:
            logger.debug("Port already gone", extra={"topic": topic, "port_id": e.port_id})
        except Exception:
            logger.exception("Handler failed", extra={"topic": topic, "port_id": port_id})

    def dispatch_spa_event(self, event: SPAEvent) -> None:
        """Run the handler for an SPA event.

        Events from an adapter that is no longer current are dropped.
        """
        if not self.context.spa.is_current(event.adapter_id):
            logger.debug(
                "Dropping event from retired SPA",
                extra={"event": event.kind.value, "adapter_id": event.adapter_id},
            )
            return

        handler = self._spa_handlers.get(event.kind)
        if handler is None:
            logger.debug("Ignoring unhandled SPA event", extra={"event": event.kind.value})
            return

        try:
            handler(self.context, event)
        except ValidationError as e:
            logger.warning(
                "Rejected invalid SPA payload",
                extra={"event": event.kind.value, "field": e.field, "error": str(e)},
            )
        except Exception:
            logger.exception("SPA event handler failed", extra={"event": event.kind.value})

    def _process(self, message: PortMessage | SPAEvent) -> None:
        if isinstance(message, SPAEvent):
            self.dispatch_spa_event(message)
        else:
            self.dispatch(message.source, message.topic, message.data)

    async def run(self) -> None:
        """Process mailbox messages one at a time until cancelled."""
        logger.info("Router started", extra={"topics": self.registry.topics})
        try:
            while True:
                message = await self._mailbox.get()
                self._process(message)
        except asyncio.CancelledError:
            logger.info("Router stopped")
            raise

    async def drain(self) -> None:
        """Process queued messages until the mailbox is empty and no SPA
        call is outstanding."""
        while True:
            while not self._mailbox.empty():
                self._process(self._mailbox.get_nowait())
            await self.context.spa.wait_idle()
            # Let tasks scheduled by the last handlers run once
            await asyncio.sleep(0)
            if self._mailbox.empty() and not self._has_pending_calls():
                return

    def _has_pending_calls(self) -> bool:
        active = self.context.spa.active
        return active is not None and bool(active.pending_tasks)

    def close(self) -> None:
        """Stop receiving SPA events."""
        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes.clear()
