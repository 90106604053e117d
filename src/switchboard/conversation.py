"""Per-call conversation state.

Tracks one peer-to-peer call per peer: which chat window it is bound to,
where it is in the offer/answer/hangup lifecycle, and any signaling that
arrived before the window was ready.
"""

import logging
import time
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from switchboard.errors import PortClosedError
from switchboard.payloads import Hangup, IceCandidate, Offer, Payload, to_wire
from switchboard.ports import Port

logger = logging.getLogger(__name__)


class ConversationState(Enum):
    """Conversation state machine states.

    State Transitions:
    - PENDING → BOUND (chat window reported ready)
    - BOUND → ACTIVE (answer observed in either direction)
    - * → ENDED (hangup from either side, or bound window closed)

    States:
    - PENDING: Created, no window bound yet
    - BOUND: Window bound, call not yet answered
    - ACTIVE: Answer observed
    - ENDED: Terminal, the conversation is discarded
    """

    PENDING = "pending"
    BOUND = "bound"
    ACTIVE = "active"
    ENDED = "ended"


VALID_TRANSITIONS: dict[ConversationState, set[ConversationState]] = {
    ConversationState.PENDING: {ConversationState.BOUND, ConversationState.ENDED},
    ConversationState.BOUND: {ConversationState.ACTIVE, ConversationState.ENDED},
    ConversationState.ACTIVE: {ConversationState.ENDED},
    ConversationState.ENDED: set(),
}

# Outbound topics relayed to a chat window
OFFER_TOPIC = "call-offer"
ANSWER_TOPIC = "call-answer"
HANGUP_TOPIC = "call-hangup"
ICE_CANDIDATE_TOPIC = "ice-candidate"


@dataclass
class Conversation:
    """One call with ``peer``."""

    peer: str
    incoming: bool = False
    port: Port | None = None
    state: ConversationState = ConversationState.PENDING
    pending_offer: Offer | None = None
    pending_candidates: list[IceCandidate] = field(default_factory=list)
    created_ts: float = field(default_factory=time.monotonic)

    @property
    def is_ended(self) -> bool:
        return self.state == ConversationState.ENDED

    def transition_state(self, new_state: ConversationState) -> None:
        """Transition conversation to a new state with validation.

        Raises:
            ValueError: If transition is invalid
        """
        if new_state not in VALID_TRANSITIONS.get(self.state, set()):
            raise ValueError(
                f"Invalid conversation transition: {self.state.value} → {new_state.value}"
            )

        old_state = self.state
        self.state = new_state

        logger.info(
            "Conversation state transition",
            extra={
                "peer": self.peer,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )

    def window_opened(self, port: Port, nick: str) -> None:
        """Bind the chat window and replay what it needs to render the call.

        Sends ``user-nick`` and ``conversation-open`` to the window, then any
        offer and ICE candidates buffered while no window was bound.

        Raises:
            PortClosedError: If the window closed before it could be served
        """
        self.transition_state(ConversationState.BOUND)
        self.port = port

        port.post_event("user-nick", {"nick": nick})
        port.post_event("conversation-open", {"peer": self.peer, "incoming": self.incoming})

        if self.pending_offer is not None:
            port.post_event(OFFER_TOPIC, to_wire(self.pending_offer))
            self.pending_offer = None
        for candidate in self.pending_candidates:
            port.post_event(ICE_CANDIDATE_TOPIC, to_wire(candidate))
        self.pending_candidates.clear()

    def deliver(self, topic: str, payload: Payload) -> bool:
        """Relay a payload to the bound window.

        While no window is bound, offers and ICE candidates are buffered and
        anything else is dropped.

        Returns:
            True if the payload was posted to the window

        Raises:
            PortClosedError: If the bound window is closed
        """
        if self.port is not None:
            self.port.post_event(topic, to_wire(payload))
            return True

        if isinstance(payload, Offer):
            self.pending_offer = payload
        elif isinstance(payload, IceCandidate):
            self.pending_candidates.append(payload)
        else:
            logger.warning(
                "No window bound, dropping payload",
                extra={"peer": self.peer, "topic": topic},
            )
        return False

    def activate(self) -> None:
        """Record an observed answer."""
        if self.state == ConversationState.BOUND:
            self.transition_state(ConversationState.ACTIVE)
        else:
            logger.debug(
                "Answer observed outside bound state",
                extra={"peer": self.peer, "state": self.state.value},
            )

    def end(self) -> None:
        if not self.is_ended:
            self.transition_state(ConversationState.ENDED)
        self.pending_offer = None
        self.pending_candidates.clear()

    def summary(self) -> dict[str, Any]:
        return {
            "peer": self.peer,
            "state": self.state.value,
            "incoming": self.incoming,
            "port_id": self.port.port_id if self.port is not None else None,
            "age_s": time.monotonic() - self.created_ts,
        }


class ConversationManager:
    """Conversations keyed by peer identity.

    Thread-safety: NOT thread-safe. Mutated only by router handlers.
    """

    def __init__(self) -> None:
        self._by_peer: dict[str, Conversation] = {}

    def open(self, peer: str, incoming: bool = False) -> Conversation:
        """Create a pending conversation, replacing any existing one for ``peer``.

        The replaced conversation is ended locally; no hangup is sent for it.
        """
        previous = self._by_peer.pop(peer, None)
        if previous is not None:
            logger.warning(
                "Replacing existing conversation",
                extra={"peer": peer, "state": previous.state.value},
            )
            previous.end()

        conversation = Conversation(peer=peer, incoming=incoming)
        self._by_peer[peer] = conversation
        logger.info("Conversation opened", extra={"peer": peer, "incoming": incoming})
        return conversation

    def get(self, peer: str) -> Conversation | None:
        return self._by_peer.get(peer)

    def awaiting_window(self, peer: str | None = None) -> Conversation | None:
        """Return the pending conversation for ``peer``, or the oldest one."""
        if peer is not None:
            conversation = self._by_peer.get(peer)
            if conversation is not None and conversation.state == ConversationState.PENDING:
                return conversation
            return None

        for conversation in self._by_peer.values():
            if conversation.state == ConversationState.PENDING:
                return conversation
        return None

    def bind_window(self, port: Port, nick: str, peer: str | None = None) -> Conversation | None:
        """Bind ``port`` to a pending conversation.

        Args:
            port: Chat window port that reported ready
            nick: Current user identity, pushed to the window
            peer: Conversation to bind; the oldest pending one if None

        Returns:
            The bound conversation, or None if no conversation was waiting
        """
        conversation = self.awaiting_window(peer)
        if conversation is None:
            logger.warning(
                "Chat window ready but no conversation is waiting",
                extra={"port_id": port.port_id, "peer": peer},
            )
            return None

        try:
            conversation.window_opened(port, nick)
        except PortClosedError:
            logger.info(
                "Chat window closed while binding",
                extra={"port_id": port.port_id, "peer": conversation.peer},
            )
            self.end(conversation.peer)
            return None
        return conversation

    def end(self, peer: str) -> Conversation | None:
        """End and remove the conversation for ``peer``."""
        conversation = self._by_peer.pop(peer, None)
        if conversation is not None:
            conversation.end()
        return conversation

    def bound_to(self, port: Port) -> list[Conversation]:
        return [c for c in self._by_peer.values() if c.port is port]

    def release_port(self, port: Port) -> list[Conversation]:
        """End and remove every conversation bound to ``port``."""
        released = self.bound_to(port)
        for conversation in released:
            logger.info(
                "Window closed, clearing conversation",
                extra={"port_id": port.port_id, "peer": conversation.peer},
            )
            self.end(conversation.peer)
        return released

    def clear(self, notify: bool = True) -> None:
        """End every conversation, telling bound windows the call is over."""
        for conversation in list(self._by_peer.values()):
            if notify and conversation.port is not None:
                try:
                    conversation.port.post_event(
                        HANGUP_TOPIC, to_wire(Hangup(peer=conversation.peer))
                    )
                except PortClosedError:
                    logger.debug(
                        "Chat window already closed",
                        extra={"port_id": conversation.port.port_id, "peer": conversation.peer},
                    )
            conversation.end()
        self._by_peer.clear()

    def __len__(self) -> int:
        return len(self._by_peer)

    def __contains__(self, peer: object) -> bool:
        return peer in self._by_peer

    def __iter__(self) -> Iterator[Conversation]:
        return iter(list(self._by_peer.values()))
