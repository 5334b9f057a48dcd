"""
protocol/ — Relay Channel Message Protocol

Message schema shared by the client session manager and the relay router.
"""

from shellrelay.protocol.messages import (
    Auth,
    AuthMethod,
    AuthSuccess,
    Closed,
    Connect,
    Connected,
    Data,
    Disconnect,
    Error,
    ErrorCode,
    Message,
    MessageType,
    Ping,
    Pong,
    RemoteConfig,
    Unknown,
    decode,
    encode,
)

__all__ = [
    "Auth",
    "AuthMethod",
    "AuthSuccess",
    "Closed",
    "Connect",
    "Connected",
    "Data",
    "Disconnect",
    "Error",
    "ErrorCode",
    "Message",
    "MessageType",
    "Ping",
    "Pong",
    "RemoteConfig",
    "Unknown",
    "decode",
    "encode",
]
