"""Transport layer for the messaging-protocol connection."""

from .base import Transport, TransportFactory, TERMINAL_STATUS_CODES, UNAUTHORIZED
from .bridge import BridgeTransport, BridgeTransportFactory

__all__ = [
    "Transport",
    "TransportFactory",
    "TERMINAL_STATUS_CODES",
    "UNAUTHORIZED",
    "BridgeTransport",
    "BridgeTransportFactory",
]
