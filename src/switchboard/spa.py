"""Service provider adapter (SPA) management.

Wraps one external signaling backend and normalizes its lifecycle into the
router's event vocabulary. Every backend call runs as a fire-and-forget
asyncio task producing exactly one ``CallResult``; failures are reported as
``SPAEventKind.ERROR`` events and never raised across the boundary.
"""

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from switchboard.errors import SPAConnectionError
from switchboard.events import EventEmitter
from switchboard.payloads import Answer, Hangup, IceCandidate, Offer, SPASpec, to_wire

logger = logging.getLogger(__name__)


class SPAState(Enum):
    """Adapter state machine states.

    State Transitions:
    - DISABLED → CONNECTING (on connect)
    - CONNECTING → CONNECTED (backend accepted the credentials)
    - CONNECTING → ERROR (connect failed)
    - * → DISCONNECTED (on disable or backend close)

    DISCONNECTED is terminal: reconnecting requires a new adapter.
    """

    DISABLED = "disabled"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"
    DISCONNECTED = "disconnected"


VALID_TRANSITIONS: dict[SPAState, set[SPAState]] = {
    SPAState.DISABLED: {SPAState.CONNECTING, SPAState.DISCONNECTED},
    SPAState.CONNECTING: {SPAState.CONNECTED, SPAState.ERROR, SPAState.DISCONNECTED},
    SPAState.CONNECTED: {SPAState.DISCONNECTED},
    SPAState.ERROR: {SPAState.DISCONNECTED},
    SPAState.DISCONNECTED: set(),
}


class SPAEventKind(Enum):
    """Events a backend reports back to the router."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    PRESENCE_UNAVAILABLE = "presence-unavailable"
    ROSTER = "roster"
    INCOMING_OFFER = "incoming-offer"
    INCOMING_ANSWER = "incoming-answer"
    INCOMING_HANGUP = "incoming-hangup"
    INCOMING_ICE_CANDIDATE = "incoming-ice-candidate"
    ERROR = "error"


class SPACall(Enum):
    """Backend operations issued by the adapter."""

    CONNECT = "connect"
    DISCONNECT = "disconnect"
    PRESENCE_REQUEST = "presence-request"
    CALL_OFFER = "call-offer"
    CALL_ANSWER = "call-answer"
    CALL_HANGUP = "call-hangup"
    ICE_CANDIDATE = "ice-candidate"


@dataclass(frozen=True)
class SPAEvent:
    """Backend event tagged with the adapter that produced it."""

    adapter_id: int
    kind: SPAEventKind
    data: Any = None


@dataclass(frozen=True)
class CallResult:
    """Outcome of one backend call: a value on success, an error otherwise."""

    call: SPACall
    ok: bool
    value: Any = None
    error: Exception | None = None


EventSink = Callable[[SPAEventKind, Any], None]


class SPABackend(ABC):
    """Base class for signaling backends.

    A backend is bound to one ``src`` and reports asynchronous events (roster
    updates, incoming signaling, closes) through the ``emit`` sink it was
    constructed with.
    """

    def __init__(self, src: str, emit: EventSink) -> None:
        self.src = src
        self._emit = emit

    @abstractmethod
    async def connect(self, credentials: Any) -> dict[str, Any]:
        """Authenticate with the backend.

        Returns:
            Connection info (may carry ``nick`` and ``capabilities``)

        Raises:
            SPAConnectionError: If the backend rejects or cannot be reached
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the backend connection normally."""

    @abstractmethod
    async def presence_request(self) -> None:
        """Ask the backend to send the current roster."""

    @abstractmethod
    async def call_offer(self, data: dict[str, Any]) -> None: ...

    @abstractmethod
    async def call_answer(self, data: dict[str, Any]) -> None: ...

    @abstractmethod
    async def call_hangup(self, data: dict[str, Any]) -> None: ...

    @abstractmethod
    async def ice_candidate(self, data: dict[str, Any]) -> None: ...


BackendFactory = Callable[[str, EventSink], SPABackend]


class SPAAdapter:
    """One enabled SPA and its backend.

    Thread-safety: NOT thread-safe. Use from the router's event loop.
    """

    def __init__(
        self,
        adapter_id: int,
        spec: SPASpec,
        backend_factory: BackendFactory,
        sink: Callable[[SPAEvent], None],
    ) -> None:
        """Initialize adapter and build its backend.

        Args:
            adapter_id: Unique id used to discard events from retired adapters
            spec: Name, source and credentials of the SPA
            backend_factory: Builds the backend for ``spec.src``
            sink: Receives every event of this adapter

        Raises:
            SPAConnectionError: If no backend can be built for ``spec.src``
        """
        self.adapter_id = adapter_id
        self.spec = spec
        self.state = SPAState.DISABLED
        self.capabilities: list[Any] = []
        self._sink = sink
        self._tasks: set[asyncio.Task[CallResult]] = set()
        self.backend = backend_factory(spec.src, self._on_backend_event)

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def src(self) -> str:
        return self.spec.src

    @property
    def pending_tasks(self) -> list[asyncio.Task[CallResult]]:
        return [task for task in self._tasks if not task.done()]

    def transition_state(self, new_state: SPAState) -> None:
        """Transition adapter to a new state with validation.

        Raises:
            ValueError: If transition is invalid
        """
        if new_state not in VALID_TRANSITIONS.get(self.state, set()):
            raise ValueError(f"Invalid SPA transition: {self.state.value} → {new_state.value}")

        old_state = self.state
        self.state = new_state
        logger.info(
            "SPA state transition",
            extra={
                "spa": self.name,
                "adapter_id": self.adapter_id,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )

    def connect(self, credentials: Any = None) -> asyncio.Task[CallResult]:
        """Start connecting with ``credentials`` (``self.spec.credentials`` if None)."""
        self.transition_state(SPAState.CONNECTING)
        if credentials is None:
            credentials = self.spec.credentials
        return self._spawn(SPACall.CONNECT, self.backend.connect, credentials)

    def presence_request(self) -> asyncio.Task[CallResult]:
        return self._spawn(SPACall.PRESENCE_REQUEST, self.backend.presence_request)

    def call_offer(self, offer: Offer) -> asyncio.Task[CallResult]:
        return self._spawn(SPACall.CALL_OFFER, self.backend.call_offer, to_wire(offer))

    def call_answer(self, answer: Answer) -> asyncio.Task[CallResult]:
        return self._spawn(SPACall.CALL_ANSWER, self.backend.call_answer, to_wire(answer))

    def call_hangup(self, hangup: Hangup) -> asyncio.Task[CallResult]:
        return self._spawn(SPACall.CALL_HANGUP, self.backend.call_hangup, to_wire(hangup))

    def ice_candidate(self, candidate: IceCandidate) -> asyncio.Task[CallResult]:
        return self._spawn(SPACall.ICE_CANDIDATE, self.backend.ice_candidate, to_wire(candidate))

    def disable(self) -> None:
        """Cancel in-flight calls and disconnect the backend.

        Events the backend emits afterwards still reach the sink; the router
        drops them because this adapter is no longer current.
        """
        if self.state == SPAState.DISCONNECTED:
            return

        for task in self.pending_tasks:
            task.cancel()
        self.transition_state(SPAState.DISCONNECTED)
        self._spawn(SPACall.DISCONNECT, self.backend.disconnect)

    async def join(self) -> None:
        """Wait for every outstanding call of this adapter."""
        while pending := self.pending_tasks:
            await asyncio.gather(*pending, return_exceptions=True)

    def _spawn(
        self, call: SPACall, method: Callable[..., Awaitable[Any]], *args: Any
    ) -> asyncio.Task[CallResult]:
        task = asyncio.get_running_loop().create_task(
            self._invoke(call, method, *args), name=f"spa-{self.adapter_id}-{call.value}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _invoke(
        self, call: SPACall, method: Callable[..., Awaitable[Any]], *args: Any
    ) -> CallResult:
        try:
            value = await method(*args)
        except Exception as e:
            result = CallResult(call, ok=False, error=e)
        else:
            result = CallResult(call, ok=True, value=value)
        self._report(result)
        return result

    def _report(self, result: CallResult) -> None:
        if result.ok:
            logger.debug(
                "SPA call completed",
                extra={"spa": self.name, "call": result.call.value},
            )
            if result.call is SPACall.CONNECT:
                self._on_backend_event(SPAEventKind.CONNECTED, result.value or {})
            return

        logger.warning(
            "SPA call failed",
            extra={"spa": self.name, "call": result.call.value, "error": str(result.error)},
        )
        if result.call is SPACall.DISCONNECT:
            return
        self._on_backend_event(
            SPAEventKind.ERROR, {"call": result.call.value, "message": str(result.error)}
        )

    def _on_backend_event(self, kind: SPAEventKind, data: Any = None) -> None:
        self._sink(SPAEvent(self.adapter_id, kind, data))


class SPAManager:
    """Holds at most one active SPA adapter.

    Backend events of every adapter are published on ``events`` keyed by
    ``SPAEventKind`` with the ``SPAEvent`` as payload.
    """

    def __init__(self, backend_factory: BackendFactory | None = None) -> None:
        """Initialize manager.

        Args:
            backend_factory: Builds a backend for a ``src``. Defaults to the
                WebSocket backend factory.
        """
        if backend_factory is None:
            from switchboard.spa_websocket import create_backend

            backend_factory = create_backend

        self._backend_factory = backend_factory
        self._ids = itertools.count(1)
        self._retired: list[SPAAdapter] = []
        self.active: SPAAdapter | None = None
        self.events: EventEmitter[SPAEventKind] = EventEmitter(SPAEventKind)

    def enable(self, spec: SPASpec) -> SPAAdapter:
        """Replace the active adapter with one for ``spec`` and connect it.

        Raises:
            SPAConnectionError: If no backend can be built for ``spec.src``
        """
        self.disable_active()

        try:
            adapter = SPAAdapter(next(self._ids), spec, self._backend_factory, self._publish)
        except SPAConnectionError:
            raise
        except Exception as e:
            raise SPAConnectionError(f"Cannot create SPA backend for {spec.src}: {e}") from e

        self.active = adapter
        logger.info(
            "SPA enabled",
            extra={"spa": spec.name, "src": spec.src, "adapter_id": adapter.adapter_id},
        )
        adapter.connect(spec.credentials)
        return adapter

    def disable(self, name: str) -> SPAAdapter | None:
        """Disable the active adapter if it is called ``name``."""
        if self.active is None or self.active.name != name:
            logger.debug("No active SPA to disable", extra={"spa": name})
            return None
        return self.disable_active()

    def disable_active(self) -> SPAAdapter | None:
        """Disable and retire the active adapter, if any."""
        adapter = self.retire()
        if adapter is not None:
            adapter.disable()
            self._forget_when_idle(adapter)
            logger.info("SPA disabled", extra={"spa": adapter.name})
        return adapter

    def retire(self) -> SPAAdapter | None:
        """Stop treating the active adapter as current, without disabling it."""
        adapter = self.active
        if adapter is None:
            return None
        self.active = None
        self._retired.append(adapter)
        return adapter

    @property
    def retired(self) -> list[SPAAdapter]:
        """Retired adapters that still have backend calls in flight."""
        return list(self._retired)

    def _forget_when_idle(self, adapter: SPAAdapter) -> None:
        pending = adapter.pending_tasks
        if not pending:
            self._forget(adapter)
            return
        for task in pending:
            task.add_done_callback(lambda _task: self._forget(adapter))

    def _forget(self, adapter: SPAAdapter) -> None:
        if adapter.pending_tasks or adapter not in self._retired:
            return
        self._retired.remove(adapter)
        logger.debug("Retired SPA released", extra={"adapter_id": adapter.adapter_id})

    def is_current(self, adapter_id: int) -> bool:
        return self.active is not None and self.active.adapter_id == adapter_id

    async def wait_idle(self) -> None:
        """Wait until no adapter has an outstanding backend call."""
        while True:
            adapters = self._retired + ([self.active] if self.active else [])
            pending = [task for adapter in adapters for task in adapter.pending_tasks]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)
        self._retired = [a for a in self._retired if a.pending_tasks]

    async def shutdown(self) -> None:
        self.disable_active()
        await self.wait_idle()

    def _publish(self, event: SPAEvent) -> None:
        self.events.emit(event.kind, event)
