"""
client/ — browser-side half of the relay protocol

SessionManager drives the handshake over a SessionTransport; GatewayLogin
performs the HTTP login whose cookie the relay recognises.
"""

from shellrelay.client.gateway_login import GatewayLogin
from shellrelay.client.session_manager import ConnectionRequest, SessionManager, SessionState
from shellrelay.client.transport import SessionTransport, WebSocketTransport

__all__ = [
    "ConnectionRequest",
    "GatewayLogin",
    "SessionManager",
    "SessionState",
    "SessionTransport",
    "WebSocketTransport",
]
