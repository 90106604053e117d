"""Transport layer for UI surface connections."""

from switchboard.transport.base import Transport, TransportPort
from switchboard.transport.websocket_protocol import Envelope
from switchboard.transport.websocket_transport import WebSocketPort, WebSocketTransport

__all__ = [
    "Envelope",
    "Transport",
    "TransportPort",
    "WebSocketPort",
    "WebSocketTransport",
]
