"""Router handlers.

UI handlers take ``(ctx, source, topic, data)`` and are registered by topic in
``UI_HANDLERS``. SPA handlers take ``(ctx, event)`` and are keyed by
``SPAEventKind`` in ``SPA_HANDLERS``. Handlers are synchronous: they mutate
the ``WorkerContext``, post events to ports and schedule SPA calls, but never
await.
"""

import logging
from collections.abc import Callable
from typing import Any, cast

from switchboard.context import WorkerContext
from switchboard.conversation import (
    ANSWER_TOPIC,
    HANGUP_TOPIC,
    ICE_CANDIDATE_TOPIC,
    OFFER_TOPIC,
    Conversation,
)
from switchboard.errors import (
    NORMAL_CLOSURE,
    PortClosedError,
    SPAConnectionError,
    UnexpectedClose,
    ValidationError,
)
from switchboard.payloads import (
    Answer,
    ContactList,
    ConversationOpen,
    Hangup,
    IceCandidate,
    Offer,
    Payload,
    PayloadKind,
    SPASpec,
    UserEntry,
    parse,
    parse_many,
)
from switchboard.ports import Port
from switchboard.spa import SPAAdapter, SPAEvent, SPAEventKind, SPAState
from switchboard.user import Presence

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Shared session transitions
# ---------------------------------------------------------------------------


def _connect_failed(ctx: WorkerContext, message: str) -> None:
    """Sign out after the SPA could not connect and tell every roster port."""
    logger.error("SPA connection failed", extra={"error": message})
    ctx.reset_session()
    ctx.ports.broadcast("spa-error", message)


def _session_lost(ctx: WorkerContext, code: int) -> None:
    """Sign out after the SPA channel closed with ``code``."""
    if code != NORMAL_CLOSURE:
        logger.warning(str(UnexpectedClose(code)))
    else:
        logger.info("SPA session closed", extra={"code": code})
    ctx.reset_session()
    ctx.ports.broadcast("presence-unavailable", code)


def _close_code(data: Any) -> int:
    if isinstance(data, dict):
        data = data.get("code", NORMAL_CLOSURE)
    try:
        return int(data)
    except (TypeError, ValueError):
        return NORMAL_CLOSURE


def _deliver(
    ctx: WorkerContext, conversation: Conversation, topic: str, payload: Payload
) -> bool:
    """Relay ``payload`` to the conversation's window, releasing it if closed."""
    try:
        return conversation.deliver(topic, payload)
    except PortClosedError:
        logger.info(
            "Chat window closed, dropping conversation",
            extra={"peer": conversation.peer, "topic": topic},
        )
        if conversation.port is not None:
            ctx.close_port(conversation.port)
        ctx.conversations.end(conversation.peer)
        return False


# ---------------------------------------------------------------------------
# UI handlers
# ---------------------------------------------------------------------------


def handle_sidebar_ready(ctx: WorkerContext, source: Port | None, topic: str, data: Any) -> None:
    """Register a roster port and announce the worker to all of them."""
    if source is None:
        return

    ctx.ports.add(source)
    ctx.ports.broadcast("worker-ready", {})

    adapter = ctx.spa.active
    if ctx.user.presence == Presence.CONNECTED and adapter is not None:
        source.post_event("spa-connected", {"capabilities": adapter.capabilities})


def handle_chat_window_ready(
    ctx: WorkerContext, source: Port | None, topic: str, data: Any
) -> None:
    if source is None:
        return

    peer = None
    if isinstance(data, dict) and data.get("peer") is not None:
        peer = cast(ConversationOpen, parse(PayloadKind.CONVERSATION_OPEN, data)).peer

    ctx.conversations.bind_window(source, ctx.user.name, peer=peer)


def handle_port_closing(ctx: WorkerContext, source: Port | None, topic: str, data: Any) -> None:
    if source is not None:
        ctx.close_port(source)


def handle_contacts(ctx: WorkerContext, source: Port | None, topic: str, data: Any) -> None:
    """Replace the roster with an imported contact list."""
    contacts = cast(ContactList, parse(PayloadKind.CONTACTS, data))
    ctx.roster.update_from_source(contacts.contacts, contacts.source)


def handle_conversation_open(
    ctx: WorkerContext, source: Port | None, topic: str, data: Any
) -> None:
    request = cast(ConversationOpen, parse(PayloadKind.CONVERSATION_OPEN, data))
    ctx.conversations.open(request.peer)


def handle_spa_enable(ctx: WorkerContext, source: Port | None, topic: str, data: Any) -> None:
    """Replace the active SPA and start connecting.

    The replaced SPA is reported as a normal disconnect before the new one is
    enabled.
    """
    spec = cast(SPASpec, parse(PayloadKind.SPA_SPEC, data))

    if ctx.spa.disable_active() is not None:
        _session_lost(ctx, NORMAL_CLOSURE)

    ctx.user.set(presence=Presence.CONNECTING)
    try:
        ctx.spa.enable(spec)
    except SPAConnectionError as e:
        _connect_failed(ctx, str(e))


def handle_spa_disable(ctx: WorkerContext, source: Port | None, topic: str, data: Any) -> None:
    if not isinstance(data, str) or not data:
        raise ValidationError("spa-disable", None, "expected the SPA name")

    if ctx.spa.disable(data) is not None:
        _session_lost(ctx, NORMAL_CLOSURE)


def handle_presence_request(
    ctx: WorkerContext, source: Port | None, topic: str, data: Any
) -> None:
    """Serve the cached roster, or ask the SPA for one if it is empty."""
    if len(ctx.roster) > 0:
        ctx.ports.broadcast("users", ctx.roster.to_wire())
        return

    adapter = ctx.spa.active
    if adapter is None:
        logger.debug("Presence requested with no SPA enabled")
        return
    adapter.presence_request()


def handle_call_offer(ctx: WorkerContext, source: Port | None, topic: str, data: Any) -> None:
    offer = cast(Offer, parse(PayloadKind.OFFER, data))
    _forward(ctx, topic, offer.peer, lambda adapter: adapter.call_offer(offer))


def handle_call_answer(ctx: WorkerContext, source: Port | None, topic: str, data: Any) -> None:
    answer = cast(Answer, parse(PayloadKind.ANSWER, data))

    conversation = ctx.conversations.get(answer.peer)
    if conversation is not None:
        conversation.activate()
    _forward(ctx, topic, answer.peer, lambda adapter: adapter.call_answer(answer))


def handle_call_hangup(ctx: WorkerContext, source: Port | None, topic: str, data: Any) -> None:
    hangup = cast(Hangup, parse(PayloadKind.HANGUP, data))

    ctx.conversations.end(hangup.peer)
    _forward(ctx, topic, hangup.peer, lambda adapter: adapter.call_hangup(hangup))


def handle_ice_candidate(ctx: WorkerContext, source: Port | None, topic: str, data: Any) -> None:
    candidate = cast(IceCandidate, parse(PayloadKind.ICE_CANDIDATE, data))
    _forward(ctx, topic, candidate.peer, lambda adapter: adapter.ice_candidate(candidate))


def _forward(
    ctx: WorkerContext, topic: str, peer: str, call: Callable[[SPAAdapter], object]
) -> None:
    adapter = ctx.spa.active
    if adapter is None:
        logger.warning("No SPA enabled, dropping signaling", extra={"topic": topic, "peer": peer})
        return

    logger.debug(
        "Forwarding signaling to SPA",
        extra={"topic": topic, "peer": peer, "sender": ctx.user.name, "spa": adapter.name},
    )
    call(adapter)


UI_HANDLERS = {
    "sidebar-ready": handle_sidebar_ready,
    "chat-window-ready": handle_chat_window_ready,
    "port-closing": handle_port_closing,
    "contacts": handle_contacts,
    "conversation-open": handle_conversation_open,
    "spa-enable": handle_spa_enable,
    "spa-disable": handle_spa_disable,
    "presence-request": handle_presence_request,
    "call-offer": handle_call_offer,
    "call-answer": handle_call_answer,
    "call-hangup": handle_call_hangup,
    "ice-candidate": handle_ice_candidate,
}


# ---------------------------------------------------------------------------
# SPA event handlers
# ---------------------------------------------------------------------------


def on_spa_connected(ctx: WorkerContext, event: SPAEvent) -> None:
    """Mark the user signed in once the SPA accepted the credentials."""
    adapter = ctx.spa.active
    if adapter is None or adapter.state != SPAState.CONNECTING:
        logger.debug("Ignoring duplicate connected event", extra={"adapter_id": event.adapter_id})
        return

    info = event.data if isinstance(event.data, dict) else {}
    adapter.transition_state(SPAState.CONNECTED)

    nick = info.get("nick")
    if not nick and isinstance(adapter.spec.credentials, dict):
        nick = adapter.spec.credentials.get("email")

    capabilities = info.get("capabilities")
    adapter.capabilities = list(capabilities) if isinstance(capabilities, list) else []

    ctx.user.set(name=str(nick or ""), presence=Presence.CONNECTED)
    ctx.ports.broadcast("spa-connected", {"capabilities": adapter.capabilities})


def on_spa_error(ctx: WorkerContext, event: SPAEvent) -> None:
    if isinstance(event.data, dict) and "message" in event.data:
        message = str(event.data["message"])
    else:
        message = str(event.data)

    adapter = ctx.spa.active
    if adapter is not None and adapter.state == SPAState.CONNECTING:
        adapter.transition_state(SPAState.ERROR)
        ctx.spa.disable_active()
        _connect_failed(ctx, message)
        return

    logger.warning("SPA reported an error", extra={"error": message})
    ctx.ports.broadcast("error", message)


def on_spa_disconnected(ctx: WorkerContext, event: SPAEvent) -> None:
    ctx.spa.disable_active()
    _session_lost(ctx, _close_code(event.data))


def on_spa_roster(ctx: WorkerContext, event: SPAEvent) -> None:
    entries = parse_many(PayloadKind.USER, event.data)
    ctx.roster.replace(cast(list[UserEntry], entries))


def on_incoming_offer(ctx: WorkerContext, event: SPAEvent) -> None:
    """Relay an offer, opening an incoming conversation if none exists."""
    offer = cast(Offer, parse(PayloadKind.OFFER, event.data))

    conversation = ctx.conversations.get(offer.peer)
    if conversation is None:
        conversation = ctx.conversations.open(offer.peer, incoming=True)
        conversation.deliver(OFFER_TOPIC, offer)
        ctx.ports.broadcast("incoming-call", {"peer": offer.peer})
        return

    _deliver(ctx, conversation, OFFER_TOPIC, offer)


def on_incoming_answer(ctx: WorkerContext, event: SPAEvent) -> None:
    answer = cast(Answer, parse(PayloadKind.ANSWER, event.data))

    conversation = ctx.conversations.get(answer.peer)
    if conversation is None:
        logger.info("Answer for unknown conversation", extra={"peer": answer.peer})
        return

    if _deliver(ctx, conversation, ANSWER_TOPIC, answer):
        conversation.activate()


def on_incoming_hangup(ctx: WorkerContext, event: SPAEvent) -> None:
    hangup = cast(Hangup, parse(PayloadKind.HANGUP, event.data))

    conversation = ctx.conversations.get(hangup.peer)
    if conversation is None:
        logger.info("Hangup for unknown conversation", extra={"peer": hangup.peer})
        return

    _deliver(ctx, conversation, HANGUP_TOPIC, hangup)
    ctx.conversations.end(hangup.peer)


def on_incoming_ice_candidate(ctx: WorkerContext, event: SPAEvent) -> None:
    candidate = cast(IceCandidate, parse(PayloadKind.ICE_CANDIDATE, event.data))

    conversation = ctx.conversations.get(candidate.peer)
    if conversation is None or conversation.is_ended:
        logger.info("ICE candidate for unknown conversation", extra={"peer": candidate.peer})
        return

    _deliver(ctx, conversation, ICE_CANDIDATE_TOPIC, candidate)


SPA_HANDLERS = {
    SPAEventKind.CONNECTED: on_spa_connected,
    SPAEventKind.ERROR: on_spa_error,
    SPAEventKind.DISCONNECTED: on_spa_disconnected,
    SPAEventKind.PRESENCE_UNAVAILABLE: on_spa_disconnected,
    SPAEventKind.ROSTER: on_spa_roster,
    SPAEventKind.INCOMING_OFFER: on_incoming_offer,
    SPAEventKind.INCOMING_ANSWER: on_incoming_answer,
    SPAEventKind.INCOMING_HANGUP: on_incoming_hangup,
    SPAEventKind.INCOMING_ICE_CANDIDATE: on_incoming_ice_candidate,
}
