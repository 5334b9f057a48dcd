"""
exceptions.py — shellrelay Unified Error Hierarchy

All shellrelay-specific exceptions live here. Client and relay code raise
typed subclasses of ShellRelayError — never bare Exception.

Import from here, not from individual modules:
    from shellrelay.exceptions import TransportError, ChannelAuthError

Hierarchy:
    ShellRelayError
    ├── TransportError
    │   └── HandshakeTimeoutError
    ├── AuthError
    │   ├── GatewayAuthError
    │   └── ChannelAuthError
    ├── RemoteSessionError
    └── ProtocolError
"""

from __future__ import annotations

from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class ShellRelayError(Exception):
    """Base class for all shellrelay exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Transport layer
# ─────────────────────────────────────────────────────────────────────────────

# Close code used when the channel dropped without a close frame
# (refused connection, network loss, relay not running).
ABNORMAL_CLOSURE = 1006


class TransportError(ShellRelayError):
    """The session channel closed or was unreachable before establishment."""

    def __init__(
        self,
        endpoint: str,
        code: Optional[int] = None,
        reason: str = "",
        message: str = "",
    ) -> None:
        self.endpoint = endpoint
        self.code = code
        self.reason = reason
        super().__init__(message or self._default_message())

    def _default_message(self) -> str:
        if self.code == ABNORMAL_CLOSURE:
            return (
                f"Cannot connect to relay at {self.endpoint} (code 1006). "
                f"Please ensure the relay server is running."
            )
        reason = self.reason or "Connection lost"
        return f"Relay channel {self.endpoint} closed: {reason} (code {self.code})"


class HandshakeTimeoutError(TransportError):
    """No terminal handshake state was reached within the connect timeout."""

    def __init__(self, endpoint: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(
            endpoint,
            message=f"No response from relay at {endpoint} within {timeout:g}s",
        )


# ─────────────────────────────────────────────────────────────────────────────
# Authentication
# ─────────────────────────────────────────────────────────────────────────────

class AuthError(ShellRelayError):
    """Base for relay-access authentication failures."""


class GatewayAuthError(AuthError):
    """The HTTP login call failed or reported success=false."""


class ChannelAuthError(AuthError):
    """The relay rejected the explicit `auth` message on the channel."""


# ─────────────────────────────────────────────────────────────────────────────
# Remote shell
# ─────────────────────────────────────────────────────────────────────────────

class RemoteSessionError(ShellRelayError):
    """The remote shell backend failed to open, errored, or ended early."""


# ─────────────────────────────────────────────────────────────────────────────
# Wire protocol
# ─────────────────────────────────────────────────────────────────────────────

class ProtocolError(ShellRelayError):
    """A message could not be parsed. Logged and ignored, never fatal."""

    def __init__(self, message: str, raw: object = None) -> None:
        self.raw = raw
        super().__init__(message)


__all__ = [
    "ABNORMAL_CLOSURE",
    "ShellRelayError",
    "TransportError",
    "HandshakeTimeoutError",
    "AuthError",
    "GatewayAuthError",
    "ChannelAuthError",
    "RemoteSessionError",
    "ProtocolError",
]
