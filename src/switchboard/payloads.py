"""Signaling and request payload definitions.

Defines Pydantic models for the payloads carried in the ``data`` field of
router envelopes. Models are immutable and validate at construction: a
missing or unknown field is a ``ValidationError`` naming that field, never a
silently-empty object. ``to_wire`` is the inverse of ``parse``.
"""

from collections.abc import Iterable, Mapping
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictStr
from pydantic import ValidationError as PydanticValidationError

from switchboard.errors import ValidationError


class Payload(BaseModel):
    """Base class for all payloads."""

    model_config = ConfigDict(frozen=True, extra="forbid")


class OfferBody(Payload):
    """WebRTC session description carried by an offer."""

    sdp: StrictStr = Field(..., description="Session description")
    type: StrictStr = Field(..., description="Description type (usually 'offer')")


class Offer(Payload):
    """Call offer to or from ``peer``."""

    peer: StrictStr = Field(..., min_length=1, description="Remote party identity")
    offer: OfferBody


class Answer(Payload):
    """Call answer to or from ``peer``. The answer body is opaque."""

    peer: StrictStr = Field(..., min_length=1, description="Remote party identity")
    answer: Any = Field(..., description="Opaque answer blob")


class Hangup(Payload):
    """Call hangup. Carries nothing but the peer."""

    peer: StrictStr = Field(..., min_length=1, description="Remote party identity")


class IceCandidate(Payload):
    """Trickled ICE candidate. The candidate blob is opaque."""

    peer: StrictStr = Field(..., min_length=1, description="Remote party identity")
    candidate: Any = Field(..., description="Opaque ICE candidate blob")


class SPASpec(Payload):
    """Which SPA backend to enable and how to authenticate with it."""

    name: StrictStr = Field(..., min_length=1, description="SPA name")
    src: StrictStr = Field(..., min_length=1, description="Backend location")
    credentials: Any = Field(..., description="Opaque credentials for connect()")


class UserEntry(Payload):
    """One roster entry."""

    nick: StrictStr = Field(..., min_length=1)


class Contact(Payload):
    """One imported contact."""

    username: StrictStr = Field(..., min_length=1)


class ContactList(Payload):
    """Contacts imported from a named source (e.g. 'google')."""

    contacts: list[Contact]
    source: StrictStr = Field(..., min_length=1)


class ConversationOpen(Payload):
    """Request to open a conversation with ``peer``."""

    peer: StrictStr = Field(..., min_length=1)


class PayloadKind(str, Enum):
    """Payload kinds understood by the codec."""

    OFFER = "offer"
    ANSWER = "answer"
    HANGUP = "hangup"
    ICE_CANDIDATE = "ice-candidate"
    SPA_SPEC = "spa-spec"
    USER = "user"
    CONTACT = "contact"
    CONTACTS = "contacts"
    CONVERSATION_OPEN = "conversation-open"


PAYLOAD_TYPES: dict[PayloadKind, type[Payload]] = {
    PayloadKind.OFFER: Offer,
    PayloadKind.ANSWER: Answer,
    PayloadKind.HANGUP: Hangup,
    PayloadKind.ICE_CANDIDATE: IceCandidate,
    PayloadKind.SPA_SPEC: SPASpec,
    PayloadKind.USER: UserEntry,
    PayloadKind.CONTACT: Contact,
    PayloadKind.CONTACTS: ContactList,
    PayloadKind.CONVERSATION_OPEN: ConversationOpen,
}


def _field_path(loc: tuple[int | str, ...]) -> str:
    return ".".join(str(part) for part in loc)


def _describe(kind: PayloadKind, error: PydanticValidationError) -> ValidationError:
    """Convert the first pydantic error into a ``ValidationError``."""
    first = error.errors()[0]
    field = _field_path(first["loc"]) or None
    if first["type"] == "missing":
        message = f"missing field '{field}'"
    elif first["type"] == "extra_forbidden":
        message = f"unknown field '{field}'"
    else:
        message = f"field '{field}': {first['msg']}"
    return ValidationError(kind.value, field, message)


def parse(kind: PayloadKind | str, raw: Any) -> Payload:
    """Validate ``raw`` as a payload of the given kind.

    Args:
        kind: Payload kind (enum member or its wire value)
        raw: Decoded JSON mapping, or an already-parsed payload of that kind

    Returns:
        Immutable payload instance

    Raises:
        ValidationError: If the kind is unknown, the input is not a mapping,
            or a field is missing, unknown or of the wrong type
    """
    try:
        kind = PayloadKind(kind)
    except ValueError:
        raise ValidationError(str(kind), None, "unknown payload kind") from None

    model = PAYLOAD_TYPES[kind]
    if isinstance(raw, model):
        return raw
    if not isinstance(raw, Mapping):
        raise ValidationError(
            kind.value, None, f"expected an object, got {type(raw).__name__}"
        )

    try:
        return model.model_validate(dict(raw))
    except PydanticValidationError as e:
        raise _describe(kind, e) from e


def parse_many(kind: PayloadKind | str, raw: Any) -> list[Payload]:
    """Validate a JSON array where every element is a payload of ``kind``.

    Raises:
        ValidationError: If ``raw`` is not a list or any element is invalid
    """
    if not isinstance(raw, list):
        raise ValidationError(str(getattr(kind, "value", kind)), None, "expected a list")
    return [parse(kind, item) for item in raw]


def to_wire(payload: Payload) -> dict[str, Any]:
    """Serialize a payload to its JSON-compatible wire form."""
    return payload.model_dump(mode="json")


def to_wire_many(payloads: Iterable[Payload]) -> list[dict[str, Any]]:
    return [to_wire(p) for p in payloads]
