"""Transport layer for signaling client connections.

Wire protocol models live here; the WebSocket gateway that serves them is
imported from ``src.signaling.transport.gateway`` since it depends on the
controller, which itself depends on the protocol models.
"""

from src.signaling.transport.websocket_protocol import (
    ClientMessage,
    ServerMessage,
    encode_message,
    parse_client_message,
    parse_server_message,
)

__all__ = [
    "ClientMessage",
    "ServerMessage",
    "encode_message",
    "parse_client_message",
    "parse_server_message",
]
