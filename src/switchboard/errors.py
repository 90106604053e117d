"""Error taxonomy for the switchboard router.

Handler-local failures (``ValidationError``, ``PortNotFound``) are logged and
swallowed by the router. Backend and connection failures
(``SPAConnectionError``, ``UnexpectedClose``) are always surfaced to the UI
surfaces through a broadcast.
"""

# WebSocket close code for an expected, caller-initiated close
NORMAL_CLOSURE = 1000


class SwitchboardError(Exception):
    """Base class for all switchboard errors."""


class ValidationError(SwitchboardError, ValueError):
    """A signaling or request payload is malformed.

    Attributes:
        kind: Payload kind being parsed
        field: Dotted path of the offending field, or None if the payload
            as a whole was rejected
    """

    def __init__(self, kind: str, field: str | None, message: str) -> None:
        self.kind = kind
        self.field = field
        super().__init__(f"Invalid {kind} payload: {message}")


class PortNotFound(SwitchboardError, KeyError):
    """The port id is not registered."""

    def __init__(self, port_id: str) -> None:
        self.port_id = port_id
        super().__init__(port_id)

    def __str__(self) -> str:
        return f"Port not found: {self.port_id}"


class PortClosedError(SwitchboardError, ConnectionError):
    """An event was posted to a port that is no longer live."""


class SPAConnectionError(SwitchboardError, ConnectionError):
    """The SPA backend could not be reached or failed to connect."""


class UnexpectedClose(SwitchboardError, ConnectionError):
    """The SPA channel closed with a non-normal close code."""

    def __init__(self, code: int, reason: str = "") -> None:
        self.code = code
        self.reason = reason
        super().__init__(f"Connection closed unexpectedly (code {code}) {reason}".strip())
