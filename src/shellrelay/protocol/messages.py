"""
protocol/messages.py — Relay Channel Message Protocol

Typed message schema for all client↔relay communication.
Every message is a flat JSON object with a `type` field:

    {"type": "auth", "username": "admin", "password": "..."}
    {"type": "connect", "config": {"host": "10.0.0.5", "port": 22, ...}}
    {"type": "data", "data": "ls -la\\r"}

Each known type decodes to an immutable dataclass. An unrecognised `type`
decodes to `Unknown` rather than raising, so peers can add message kinds
without breaking older ones. Only input that is not a JSON object with a
string `type`, or a known type with malformed fields, raises ProtocolError.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, ClassVar, Mapping, Optional, Union

from shellrelay.exceptions import ProtocolError


# ─────────────────────────────────────────────────────────────────────────────
# Message types
# ─────────────────────────────────────────────────────────────────────────────

class MessageType(str, Enum):
    """All supported message types in the relay protocol."""

    # Client → Relay
    AUTH         = "auth"
    CONNECT      = "connect"
    DISCONNECT   = "disconnect"

    # Relay → Client
    AUTH_SUCCESS = "auth_success"
    CONNECTED    = "connected"
    CLOSED       = "closed"
    ERROR        = "error"

    # Both directions
    DATA         = "data"
    PING         = "ping"
    PONG         = "pong"


class AuthMethod(str, Enum):
    PASSWORD = "password"
    KEY      = "key"


# ─────────────────────────────────────────────────────────────────────────────
# Field helpers
# ─────────────────────────────────────────────────────────────────────────────

def _require_str(payload: Mapping[str, Any], key: str, mtype: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise ProtocolError(
            f"'{mtype}' message requires string field '{key}'", raw=payload
        )
    return value


def _optional_str(payload: Mapping[str, Any], key: str, mtype: str) -> Optional[str]:
    value = payload.get(key)
    if value is not None and not isinstance(value, str):
        raise ProtocolError(
            f"'{mtype}' message field '{key}' must be a string", raw=payload
        )
    return value


# ─────────────────────────────────────────────────────────────────────────────
# Remote shell parameters
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class RemoteConfig:
    """Parameters of the `connect` message — what the relay opens."""

    host: str
    port: int = 22
    username: str = ""
    password: Optional[str] = field(default=None, repr=False)
    private_key: Optional[str] = field(default=None, repr=False)
    auth_method: AuthMethod = AuthMethod.PASSWORD

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "authMethod": self.auth_method.value,
        }
        if self.password is not None:
            d["password"] = self.password
        if self.private_key is not None:
            d["privateKey"] = self.private_key
        return d

    @classmethod
    def from_dict(cls, payload: Any) -> "RemoteConfig":
        if not isinstance(payload, Mapping):
            raise ProtocolError("'connect' message requires object field 'config'",
                                raw=payload)
        host = _require_str(payload, "host", "connect")
        port = payload.get("port", 22)
        # bool is an int subclass; "port": true is not a port
        if isinstance(port, bool) or not isinstance(port, int) or not (0 < port < 65536):
            raise ProtocolError(f"'connect' config has invalid port: {port!r}",
                                raw=payload)
        method_raw = payload.get("authMethod") or (
            AuthMethod.KEY.value if payload.get("privateKey") else AuthMethod.PASSWORD.value
        )
        try:
            method = AuthMethod(method_raw)
        except ValueError:
            raise ProtocolError(f"'connect' config has unknown authMethod: {method_raw!r}",
                                raw=payload) from None
        return cls(
            host=host,
            port=port,
            username=_optional_str(payload, "username", "connect") or "",
            password=_optional_str(payload, "password", "connect"),
            private_key=_optional_str(payload, "privateKey", "connect"),
            auth_method=method,
        )


# ─────────────────────────────────────────────────────────────────────────────
# Message variants
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Auth:
    username: str
    password: str = field(repr=False)

    type: ClassVar[MessageType] = MessageType.AUTH

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "username": self.username,
                "password": self.password}


@dataclass(frozen=True)
class AuthSuccess:
    token: str = field(default="", repr=False)
    user: str = ""

    type: ClassVar[MessageType] = MessageType.AUTH_SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "token": self.token, "user": self.user}


@dataclass(frozen=True)
class Connect:
    config: RemoteConfig
    protocol: str = "ssh"

    type: ClassVar[MessageType] = MessageType.CONNECT

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": self.type.value, "config": self.config.to_dict()}
        if self.protocol != "ssh":
            d["protocol"] = self.protocol
        return d


@dataclass(frozen=True)
class Connected:
    type: ClassVar[MessageType] = MessageType.CONNECTED

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value}


@dataclass(frozen=True)
class Data:
    data: str

    type: ClassVar[MessageType] = MessageType.DATA

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "data": self.data}


@dataclass(frozen=True)
class Disconnect:
    type: ClassVar[MessageType] = MessageType.DISCONNECT

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value}


@dataclass(frozen=True)
class Closed:
    type: ClassVar[MessageType] = MessageType.CLOSED

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value}


@dataclass(frozen=True)
class Error:
    error: str
    code: Optional[str] = None

    type: ClassVar[MessageType] = MessageType.ERROR

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"type": self.type.value, "error": self.error}
        if self.code:
            d["code"] = self.code
        return d


@dataclass(frozen=True)
class Ping:
    type: ClassVar[MessageType] = MessageType.PING

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value}


@dataclass(frozen=True)
class Pong:
    type: ClassVar[MessageType] = MessageType.PONG

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value}


@dataclass(frozen=True)
class Unknown:
    """A well-formed message whose `type` this peer does not understand."""

    type_name: str
    fields: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {**self.fields, "type": self.type_name}


Message = Union[
    Auth, AuthSuccess, Connect, Connected, Data, Disconnect,
    Closed, Error, Ping, Pong, Unknown,
]


# ─────────────────────────────────────────────────────────────────────────────
# Error codes carried in the optional `code` field of `error` messages
# ─────────────────────────────────────────────────────────────────────────────

class ErrorCode(str, Enum):
    AUTH_FAILED          = "auth_failed"
    ALREADY_CONNECTED    = "already_connected"
    UNSUPPORTED_PROTOCOL = "unsupported_protocol"
    REMOTE_ERROR         = "remote_error"
    MAX_CONNECTIONS      = "max_connections"


# ─────────────────────────────────────────────────────────────────────────────
# Codec
# ─────────────────────────────────────────────────────────────────────────────

_DECODERS: dict[str, Callable[[Mapping[str, Any]], Message]] = {
    MessageType.AUTH.value: lambda p: Auth(
        username=_require_str(p, "username", "auth"),
        password=_require_str(p, "password", "auth"),
    ),
    MessageType.AUTH_SUCCESS.value: lambda p: AuthSuccess(
        token=_optional_str(p, "token", "auth_success") or "",
        user=_optional_str(p, "user", "auth_success") or "",
    ),
    MessageType.CONNECT.value: lambda p: Connect(
        config=RemoteConfig.from_dict(p.get("config")),
        protocol=_optional_str(p, "protocol", "connect") or "ssh",
    ),
    MessageType.CONNECTED.value: lambda p: Connected(),
    MessageType.DATA.value: lambda p: Data(data=_require_str(p, "data", "data")),
    MessageType.DISCONNECT.value: lambda p: Disconnect(),
    MessageType.CLOSED.value: lambda p: Closed(),
    MessageType.ERROR.value: lambda p: Error(
        error=_optional_str(p, "error", "error") or "Unknown error",
        code=_optional_str(p, "code", "error"),
    ),
    MessageType.PING.value: lambda p: Ping(),
    MessageType.PONG.value: lambda p: Pong(),
}


def encode(message: Message) -> str:
    """Serialize a message to its JSON wire form."""
    return json.dumps(message.to_dict())


def decode(raw: str | bytes) -> Message:
    """
    Parse a JSON wire frame into a typed message.

    Raises:
        ProtocolError: the frame is not JSON, not an object, has no string
            `type`, or a known type is missing/has malformed fields.
    """
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ProtocolError(f"Invalid JSON frame: {exc}", raw=raw) from exc
    except RecursionError as exc:
        raise ProtocolError("JSON frame nested too deeply", raw=raw) from exc

    if not isinstance(payload, dict):
        raise ProtocolError("Message frame must be a JSON object", raw=raw)
    mtype = payload.get("type")
    if not isinstance(mtype, str):
        raise ProtocolError("Message frame has no string 'type'", raw=raw)

    decoder = _DECODERS.get(mtype)
    if decoder is None:
        fields = {k: v for k, v in payload.items() if k != "type"}
        return Unknown(type_name=mtype, fields=fields)
    return decoder(payload)
