"""
relay/router.py — Relay Message Router

One ChannelRouter per relay channel. It authenticates the channel (cookie
token at open, or an explicit `auth` message), holds at most one remote
shell backend, and relays shell I/O as `data` messages in order.

Channel states:

    Anonymous → Authenticated → Bound → Closed
                      ↑           │
                      └───────────┘  backend ended; channel stays open

A `connect` that arrives before authentication is parked and opened as
soon as the channel authenticates. The backend opens in a background task,
so `ping` and `disconnect` are still answered during a slow SSH connect.
Nothing the client sends is fatal to the channel except `disconnect`.
"""

from __future__ import annotations

import asyncio
import uuid
from enum import Enum
from typing import Optional, Protocol

import websockets

from shellrelay.exceptions import ProtocolError, RemoteSessionError
from shellrelay.observability.logger import get_logger
from shellrelay.protocol.messages import (
    Auth,
    AuthSuccess,
    Closed,
    Connect,
    Connected,
    Data,
    Disconnect,
    Error,
    ErrorCode,
    Message,
    Ping,
    Pong,
    RemoteConfig,
    Unknown,
    decode,
    encode,
)
from shellrelay.relay.backend import BackendFactory, ShellBackend
from shellrelay.relay.credentials import CredentialStore
from shellrelay.relay.token_store import TokenStore

log = get_logger(__name__)

SUPPORTED_PROTOCOLS = frozenset({"ssh"})


class ChannelLink(Protocol):
    """The relay side of a channel. A websockets ServerConnection fits as-is."""

    async def send(self, message: str) -> None: ...

    async def close(self, code: int = 1000, reason: str = "") -> None: ...


class ChannelState(str, Enum):
    ANONYMOUS     = "anonymous"
    AUTHENTICATED = "authenticated"
    BOUND         = "bound"
    CLOSED        = "closed"


class ChannelRouter:
    def __init__(
        self,
        link: ChannelLink,
        tokens: TokenStore,
        credentials: CredentialStore,
        backend_factory: BackendFactory,
        channel_id: Optional[str] = None,
    ):
        self._link = link
        self._tokens = tokens
        self._credentials = credentials
        self._backend_factory = backend_factory
        self.channel_id = channel_id or uuid.uuid4().hex[:12]

        self._state = ChannelState.ANONYMOUS
        self._user: Optional[str] = None
        self._pending: Optional[RemoteConfig] = None
        self._open_task: Optional[asyncio.Task] = None
        self._backend: Optional[ShellBackend] = None
        self._pump_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def user(self) -> Optional[str]:
        return self._user

    @property
    def pending_connect(self) -> Optional[RemoteConfig]:
        return self._pending

    @property
    def opening(self) -> bool:
        return self._open_task is not None and not self._open_task.done()

    # ─────────────────────────────────────────────────────────────────────────
    # Entry points
    # ─────────────────────────────────────────────────────────────────────────

    async def authenticate_token(self, token: str) -> bool:
        """Authenticate from the handshake cookie. A bad token is not an error."""
        user = await self._tokens.resolve(token)
        if user is None:
            log.info("router.cookie_rejected", channel_id=self.channel_id)
            return False
        await self._mark_authenticated(user, token, via="cookie")
        return True

    async def handle(self, raw: str | bytes) -> None:
        """Process one inbound frame."""
        if self._state is ChannelState.CLOSED:
            return
        try:
            message = decode(raw)
        except ProtocolError as exc:
            log.warning("router.malformed_message", channel_id=self.channel_id, error=str(exc))
            return

        if isinstance(message, Auth):
            await self._on_auth(message)
        elif isinstance(message, Connect):
            await self._on_connect(message)
        elif isinstance(message, Data):
            await self._on_data(message)
        elif isinstance(message, Disconnect):
            await self._on_disconnect()
        elif isinstance(message, Ping):
            await self._send(Pong())
        elif isinstance(message, Pong):
            log.debug("router.pong", channel_id=self.channel_id)
        elif isinstance(message, Unknown):
            log.info("router.unknown_message", channel_id=self.channel_id,
                     type=message.type_name)
        else:
            log.info("router.unexpected_message", channel_id=self.channel_id,
                     type=message.type.value)

    async def close(self) -> None:
        """The channel transport is gone. Release everything."""
        if self._state is ChannelState.CLOSED and self._backend is None:
            return
        self._state = ChannelState.CLOSED
        self._pending = None
        await self._release_backend()
        log.info("router.channel_closed", channel_id=self.channel_id, user=self._user)

    # ─────────────────────────────────────────────────────────────────────────
    # Message handlers
    # ─────────────────────────────────────────────────────────────────────────

    async def _on_auth(self, message: Auth) -> None:
        if not self._credentials.verify(message.username, message.password):
            log.warning("router.auth_failed", channel_id=self.channel_id, user=message.username)
            await self._send(Error(error="Authentication failed",
                                   code=ErrorCode.AUTH_FAILED.value))
            return
        token = await self._tokens.issue(message.username)
        await self._mark_authenticated(message.username, token, via="auth_message")

    async def _mark_authenticated(self, user: str, token: str, via: str) -> None:
        self._user = user
        if self._state is ChannelState.ANONYMOUS:
            self._state = ChannelState.AUTHENTICATED
        log.info("router.authenticated", channel_id=self.channel_id, user=user, via=via)
        await self._send(AuthSuccess(token=token, user=user))
        if self._pending is not None and self._state is ChannelState.AUTHENTICATED:
            self._start_open()

    async def _on_connect(self, message: Connect) -> None:
        if message.protocol not in SUPPORTED_PROTOCOLS:
            log.info("router.unsupported_protocol", channel_id=self.channel_id,
                     protocol=message.protocol)
            await self._send(Error(
                error=f"Protocol '{message.protocol}' is not supported by this relay",
                code=ErrorCode.UNSUPPORTED_PROTOCOL.value,
            ))
            return
        if self._state is ChannelState.BOUND or self.opening:
            await self._send(Error(
                error="A remote session is already open on this channel",
                code=ErrorCode.ALREADY_CONNECTED.value,
            ))
            return

        self._pending = message.config
        if self._state is ChannelState.AUTHENTICATED:
            self._start_open()
        else:
            log.info("router.connect_pending", channel_id=self.channel_id,
                     host=message.config.host)

    async def _on_data(self, message: Data) -> None:
        backend = self._backend
        if self._state is not ChannelState.BOUND or backend is None:
            log.info("router.data_dropped", channel_id=self.channel_id,
                     state=self._state.value, size=len(message.data))
            return
        try:
            await backend.write(message.data)
        except RemoteSessionError as exc:
            await self._backend_failed(exc)

    async def _on_disconnect(self) -> None:
        log.info("router.disconnect_requested", channel_id=self.channel_id)
        await self.close()
        await self._link.close(1000, "client disconnect")

    # ─────────────────────────────────────────────────────────────────────────
    # Backend lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def _start_open(self) -> None:
        """Open the parked connect in the background so the channel keeps reading."""
        config, self._pending = self._pending, None
        self._open_task = asyncio.create_task(self._open_backend(config))

    async def _open_backend(self, config: RemoteConfig) -> None:
        backend = self._backend_factory()
        try:
            await backend.open(config)
        except RemoteSessionError as exc:
            log.warning("router.backend_open_failed", channel_id=self.channel_id,
                        host=config.host, error=str(exc))
            await self._send(Error(error=str(exc), code=ErrorCode.REMOTE_ERROR.value))
            return

        # Channel closed while the shell was connecting.
        if self._state is ChannelState.CLOSED:
            await backend.close()
            return
        self._backend = backend
        self._state = ChannelState.BOUND
        log.info("router.backend_opened", channel_id=self.channel_id,
                 host=config.host, port=config.port, user=self._user)
        await self._send(Connected())
        self._pump_task = asyncio.create_task(self._pump(backend))

    async def _pump(self, backend: ShellBackend) -> None:
        """Forward backend output to the channel until EOF or failure."""
        try:
            while True:
                chunk = await backend.read()
                if chunk is None:
                    break
                await self._send(Data(data=chunk))
        except RemoteSessionError as exc:
            await self._backend_failed(exc)
            return
        log.info("router.backend_ended", channel_id=self.channel_id)
        await self._send(Closed())
        await self._release_backend()

    async def _backend_failed(self, exc: RemoteSessionError) -> None:
        log.warning("router.backend_error", channel_id=self.channel_id, error=str(exc))
        await self._send(Error(error=str(exc), code=ErrorCode.REMOTE_ERROR.value))
        await self._release_backend()

    async def _release_backend(self) -> None:
        backend, self._backend = self._backend, None
        pump, self._pump_task = self._pump_task, None
        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass
        if self._state is ChannelState.BOUND:
            self._state = ChannelState.AUTHENTICATED
        if backend is not None:
            try:
                await backend.close()
            except (RemoteSessionError, OSError) as exc:
                log.warning("router.backend_close_failed", channel_id=self.channel_id,
                            error=str(exc))

    async def _send(self, message: Message) -> None:
        try:
            await self._link.send(encode(message))
        except websockets.ConnectionClosed:
            log.debug("router.send_after_close", channel_id=self.channel_id,
                      type=message.type.value)
