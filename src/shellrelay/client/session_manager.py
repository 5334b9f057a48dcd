"""
client/session_manager.py — Client Session Manager

Owns one relay transport and drives the two-phase handshake:

    Idle → OpeningTransport → AuthenticatingGateway → AwaitingChannelAuth
         → AuthenticatingRemote → Established → Closed

Relay access is authenticated twice over, whichever lands first: the HTTP
login sets a cookie the relay may already have matched on the handshake
(it then sends `auth_success` / `connected` unprompted), and if nothing has
arrived when the grace timer fires, one explicit `auth` message is sent.
Remote-host credentials only ever travel in the `connect` message, which is
sent once, after relay auth succeeds.

Every asynchronous continuation (timer, HTTP response, transport callback)
captures the attempt id current when it was scheduled and is discarded if
the session has since been torn down. A manager is single-use: after
Closed, connect() is a no-op and a retry builds a new manager.

Usage:
    manager = SessionManager(settings.effective_client, timings=settings.session)
    token = manager.on_output(lambda text: sys.stdout.write(text))
    manager.on_close(lambda: print("bye"))
    await manager.connect(ConnectionRequest(host="10.0.0.5", username="root",
                                            password="x", relay_username="admin",
                                            relay_password="y"))
    manager.send("uptime\\r")
    await manager.disconnect()
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Coroutine, Mapping, Optional

from shellrelay.client.callbacks import CallbackRegistry, CallbackToken
from shellrelay.client.gateway_login import GatewayLogin
from shellrelay.client.timers import CancellableTimer, ResolveOnce
from shellrelay.client.transport import SessionTransport, TransportFactory, WebSocketTransport
from shellrelay.config.settings import ClientConfig, SessionTimingConfig
from shellrelay.exceptions import (
    ChannelAuthError,
    GatewayAuthError,
    HandshakeTimeoutError,
    ProtocolError,
    RemoteSessionError,
    ShellRelayError,
    TransportError,
)
from shellrelay.observability.logger import get_logger
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
    Ping,
    Pong,
    RemoteConfig,
    Unknown,
    decode,
    encode,
)

log = get_logger(__name__)

OutputSink = Callable[[str], Any]
CloseListener = Callable[[], Any]

CLOSED_NOTICE = "\r\n\r\n[Connection closed]\r\n"
REMOTE_CLOSED_NOTICE = "\r\n\r\n[Remote session closed]\r\n"


# ─────────────────────────────────────────────────────────────────────────────
# Request + state
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ConnectionRequest:
    """
    What the connection form produces.

    The remote credential (password or private_key) opens the shell; the
    relay credential (relay_username/relay_password) grants access to the
    relay. Neither substitutes for the other.
    """

    host: str
    username: str
    port: int = 22
    password: Optional[str] = field(default=None, repr=False)
    private_key: Optional[str] = field(default=None, repr=False)
    relay_username: str = ""
    relay_password: str = field(default="", repr=False)
    endpoint: Optional[str] = None
    auth_endpoint: Optional[str] = None
    protocol: str = "ssh"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ConnectionRequest":
        """Accept both snake_case and the form's camelCase keys."""
        def pick(*keys: str, default: Any = None) -> Any:
            for key in keys:
                if data.get(key) not in (None, ""):
                    return data[key]
            return default

        private_key = pick("private_key", "privateKey")
        if pick("auth_method", "authMethod") == AuthMethod.PASSWORD.value:
            private_key = None
        return cls(
            host=pick("host", default=""),
            port=int(pick("port", default=22)),
            username=pick("username", default=""),
            password=pick("password"),
            private_key=private_key,
            relay_username=pick("relay_username", "wsUsername", default=""),
            relay_password=pick("relay_password", "wsPassword", default=""),
            endpoint=pick("endpoint"),
            auth_endpoint=pick("auth_endpoint", "authEndpoint"),
            protocol=pick("protocol", default="ssh"),
        )

    @property
    def auth_method(self) -> AuthMethod:
        return AuthMethod.KEY if self.private_key else AuthMethod.PASSWORD

    def remote_config(self) -> RemoteConfig:
        key_auth = self.auth_method is AuthMethod.KEY
        return RemoteConfig(
            host=self.host,
            port=self.port,
            username=self.username,
            password=None if key_auth else (self.password or ""),
            private_key=self.private_key if key_auth else None,
            auth_method=self.auth_method,
        )


class SessionState(str, Enum):
    IDLE                   = "idle"
    OPENING_TRANSPORT      = "opening_transport"
    AUTHENTICATING_GATEWAY = "authenticating_gateway"
    AWAITING_CHANNEL_AUTH  = "awaiting_channel_auth"
    AUTHENTICATING_REMOTE  = "authenticating_remote"
    ESTABLISHED            = "established"
    CLOSED                 = "closed"


_STATE_ORDER = {state: i for i, state in enumerate(SessionState)}


# ─────────────────────────────────────────────────────────────────────────────
# Session manager
# ─────────────────────────────────────────────────────────────────────────────

class SessionManager:
    """One connect-to-disconnect lifecycle against a relay."""

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        timings: Optional[SessionTimingConfig] = None,
        transport_factory: Optional[TransportFactory] = None,
        login: Optional[GatewayLogin] = None,
    ):
        self._config = config or ClientConfig()
        self._timings = timings or SessionTimingConfig()
        self._transport_factory = transport_factory or WebSocketTransport.open
        self._login = login or GatewayLogin()
        self._owns_login = login is None

        self._state = SessionState.IDLE
        self._attempt_id: Optional[str] = None
        self._established = False
        self._tearing_down = False
        self._last_error: Optional[ShellRelayError] = None
        self._fallback_auth_sent = 0

        self._request: Optional[ConnectionRequest] = None
        self._endpoint = ""
        self._transport: Optional[SessionTransport] = None
        self._outcome: Optional[asyncio.Future] = None

        self._auth_gate = ResolveOnce()
        self._remote_gate = ResolveOnce()
        self._timers: dict[str, CancellableTimer] = {}
        self._tasks: set[asyncio.Task] = set()
        self._keepalive_task: Optional[asyncio.Task] = None
        self._closers: set[asyncio.Task] = set()

        self._output: CallbackRegistry[OutputSink] = CallbackRegistry("output")
        self._close: CallbackRegistry[CloseListener] = CallbackRegistry("close")

    # ─────────────────────────────────────────────────────────────────────────
    # Introspection
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def attempt_id(self) -> Optional[str]:
        return self._attempt_id

    @property
    def established(self) -> bool:
        return self._established

    @property
    def last_error(self) -> Optional[ShellRelayError]:
        return self._last_error

    @property
    def fallback_auth_sent(self) -> int:
        """How many explicit `auth` messages this session has sent (0 or 1)."""
        return self._fallback_auth_sent

    # ─────────────────────────────────────────────────────────────────────────
    # Callback registration
    # ─────────────────────────────────────────────────────────────────────────

    def on_output(self, sink: OutputSink) -> CallbackToken:
        return self._output.add(sink)

    def remove_output(self, token: CallbackToken) -> bool:
        return self._output.remove(token)

    def on_close(self, listener: CloseListener) -> CallbackToken:
        return self._close.add(listener)

    def remove_close(self, token: CallbackToken) -> bool:
        return self._close.remove(token)

    # ─────────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────────

    async def connect(self, request: ConnectionRequest) -> None:
        """
        Open the session and wait until it is Established.

        A call made while not Idle (a second mount, a double click) returns
        immediately without touching the transport.

        Raises:
            HandshakeTimeoutError: nothing settled within connect_timeout.
            TransportError: the channel closed or was unreachable.
            ChannelAuthError: the relay rejected the relay credentials.
            RemoteSessionError: the relay could not open the remote shell.
        """
        if self._state is not SessionState.IDLE:
            log.info("session.connect_ignored", state=self._state.value,
                     attempt_id=self._attempt_id)
            return

        attempt = uuid.uuid4().hex
        self._attempt_id = attempt
        self._request = request
        self._endpoint = request.endpoint or self._config.websocket.endpoint
        self._outcome = asyncio.get_running_loop().create_future()
        log.info("session.connect", attempt_id=attempt, endpoint=self._endpoint,
                 host=request.host, port=request.port, auth_method=request.auth_method.value)

        self._set_state(SessionState.OPENING_TRANSPORT)
        self._start_timer("connect_timeout", self._timings.connect_timeout,
                          self._on_connect_timeout)
        self._spawn(self._open_transport(attempt))
        try:
            await self._outcome
        except asyncio.CancelledError:
            # The caller went away mid-handshake; nobody owns this session now.
            if self._is_current(attempt):
                log.info("session.connect_cancelled", attempt_id=attempt,
                         state=self._state.value)
                self._schedule_close(self._release())
            raise

    def send(self, data: str | bytes) -> bool:
        """Forward terminal input. Dropped (never queued) unless Established."""
        if (
            self._state is not SessionState.ESTABLISHED
            or self._tearing_down
            or self._transport is None
        ):
            log.debug("session.send_dropped", state=self._state.value, size=len(data))
            return False
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        return self._transport.send(encode(Data(data=data)))

    async def disconnect(self) -> None:
        """Tear the session down from any state. Safe to call repeatedly."""
        was = self._state
        transport = self._release(
            TransportError(self._endpoint, code=1000, reason="disconnected by client")
        )
        log.info("session.disconnect", from_state=was.value)
        if transport is not None and transport.is_open:
            transport.send(encode(Disconnect()))
        await self._close_resources(transport)

    # ─────────────────────────────────────────────────────────────────────────
    # Handshake steps
    # ─────────────────────────────────────────────────────────────────────────

    async def _open_transport(self, attempt: str) -> None:
        headers = {}
        cookie = self._login.cookie_header(self._endpoint)
        if cookie:
            headers["Cookie"] = cookie
        try:
            transport = await self._transport_factory(
                self._endpoint,
                on_message=self._guarded(attempt, self._on_message),
                on_close=self._guarded(attempt, self._on_transport_close),
                headers=headers,
            )
        except TransportError as exc:
            if self._is_current(attempt):
                self._fail(exc)
            return

        if not self._is_current(attempt):
            await transport.close()
            return
        self._transport = transport
        self._advance(SessionState.AUTHENTICATING_GATEWAY)
        await self._gateway_login(attempt)

    async def _gateway_login(self, attempt: str) -> None:
        username, password = self._relay_credentials()
        auth_endpoint = self._request.auth_endpoint or self._config.websocket.auth_endpoint
        try:
            await self._login.login(auth_endpoint, username, password)
        except GatewayAuthError as exc:
            if not self._is_current(attempt):
                return
            log.info("session.gateway_login_failed", attempt_id=attempt, error=str(exc))
            self._advance(SessionState.AWAITING_CHANNEL_AUTH)
            self._send_fallback_auth()
            return

        if not self._is_current(attempt):
            return
        self._advance(SessionState.AWAITING_CHANNEL_AUTH)
        if self._auth_gate.settled:
            return
        self._start_timer("auth_grace", self._timings.auth_grace, self._on_grace_elapsed)

    def _on_grace_elapsed(self) -> None:
        log.info("session.auth_grace_elapsed", attempt_id=self._attempt_id)
        self._send_fallback_auth()

    def _send_fallback_auth(self) -> None:
        if not self._auth_gate.fire("fallback"):
            return
        username, password = self._relay_credentials()
        self._send(Auth(username=username, password=password))
        self._fallback_auth_sent += 1
        log.info("session.fallback_auth_sent", attempt_id=self._attempt_id, user=username)

    def _schedule_remote_connect(self) -> None:
        if not self._remote_gate.fire():
            return
        self._start_timer("remote_connect", self._timings.remote_connect_delay,
                          self._send_remote_connect)

    def _send_remote_connect(self) -> None:
        request = self._request
        self._send(Connect(config=request.remote_config(), protocol=request.protocol))
        log.info("session.remote_connect_sent", attempt_id=self._attempt_id,
                 host=request.host, port=request.port)

    def _on_connect_timeout(self) -> None:
        self._fail(HandshakeTimeoutError(self._endpoint, self._timings.connect_timeout))

    # ─────────────────────────────────────────────────────────────────────────
    # Inbound messages
    # ─────────────────────────────────────────────────────────────────────────

    def _on_message(self, raw: str) -> None:
        try:
            message = decode(raw)
        except ProtocolError as exc:
            log.warning("session.malformed_message", error=str(exc))
            return

        if isinstance(message, AuthSuccess):
            self._on_auth_success(message)
        elif isinstance(message, Connected):
            self._on_connected()
        elif isinstance(message, Data):
            self._emit(message.data)
        elif isinstance(message, Error):
            self._on_error(message)
        elif isinstance(message, Closed):
            self._on_remote_closed()
        elif isinstance(message, Ping):
            self._send(Pong())
        elif isinstance(message, Pong):
            log.debug("session.pong", attempt_id=self._attempt_id)
        elif isinstance(message, Unknown):
            log.debug("session.unknown_message", type=message.type_name)
        else:
            log.debug("session.unexpected_message", type=message.type.value)

    def _on_auth_success(self, message: AuthSuccess) -> None:
        via = "confirmation" if self._auth_gate.fire("confirmed") else "fallback"
        self._cancel_timer("auth_grace")
        log.info("session.channel_authenticated", attempt_id=self._attempt_id,
                 user=message.user, via=via)
        if self._state is SessionState.ESTABLISHED:
            return
        self._advance(SessionState.AUTHENTICATING_REMOTE)
        self._schedule_remote_connect()

    def _on_connected(self) -> None:
        self._auth_gate.fire("confirmed")
        self._remote_gate.fire()
        self._cancel_timer("auth_grace")
        self._cancel_timer("remote_connect")
        if self._state is SessionState.ESTABLISHED:
            return
        self._cancel_timer("connect_timeout")
        self._established = True
        self._set_state(SessionState.ESTABLISHED)
        self._start_keepalive()
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_result(None)

    def _on_error(self, message: Error) -> None:
        if self._state is SessionState.ESTABLISHED:
            log.info("session.remote_error", attempt_id=self._attempt_id, error=message.error)
            self._emit(f"\r\n[error] {message.error}\r\n")
            return
        self._fail(self._classify_error(message))

    def _classify_error(self, message: Error) -> ShellRelayError:
        if message.code == ErrorCode.AUTH_FAILED.value:
            return ChannelAuthError(message.error)
        if message.code == ErrorCode.MAX_CONNECTIONS.value:
            return TransportError(self._endpoint, reason=message.error,
                                  message=f"Relay at {self._endpoint} refused the channel: "
                                          f"{message.error}")
        if message.code is None and self._state in (
            SessionState.AUTHENTICATING_GATEWAY, SessionState.AWAITING_CHANNEL_AUTH
        ):
            return ChannelAuthError(message.error)
        return RemoteSessionError(message.error)

    def _on_remote_closed(self) -> None:
        if self._state is SessionState.ESTABLISHED:
            self._begin_close(REMOTE_CLOSED_NOTICE)
        else:
            self._fail(RemoteSessionError("Remote session closed before it was established"))

    def _on_transport_close(self, code: int, reason: str) -> None:
        self._transport = None
        if self._state is SessionState.ESTABLISHED:
            log.warning("session.transport_lost", attempt_id=self._attempt_id,
                        code=code, reason=reason)
            self._begin_close(CLOSED_NOTICE)
        else:
            self._fail(TransportError(self._endpoint, code=code, reason=reason))

    # ─────────────────────────────────────────────────────────────────────────
    # Teardown
    # ─────────────────────────────────────────────────────────────────────────

    def _begin_close(self, notice: str) -> None:
        """Show the notice, then tear down after close_grace so it can be read."""
        if self._tearing_down:
            return
        self._emit(notice)
        self._tearing_down = True
        self._stop_keepalive()
        self._start_timer("close_grace", self._timings.close_grace, self._finish_close)

    def _finish_close(self) -> None:
        log.info("session.closed", attempt_id=self._attempt_id)
        self._close.dispatch()
        self._schedule_close(self._release())

    def _fail(self, error: ShellRelayError) -> None:
        log.warning("session.connect_failed", attempt_id=self._attempt_id,
                    state=self._state.value, error=str(error),
                    error_type=type(error).__name__)
        self._schedule_close(self._release(error))

    def _release(self, error: Optional[ShellRelayError] = None) -> Optional[SessionTransport]:
        """
        Invalidate the attempt and drop every pending continuation.

        Returns the transport (if any) for the caller to close. Callback
        registries are cleared so nothing fires after this point.
        """
        self._attempt_id = None
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
        self._tasks.clear()
        self._keepalive_task = None

        self._tearing_down = True
        self._established = False
        if self._state is not SessionState.CLOSED:
            self._set_state(SessionState.CLOSED)

        if self._outcome is not None and not self._outcome.done():
            if error is not None:
                self._last_error = error
                self._outcome.set_exception(error)
            else:
                self._outcome.set_result(None)

        self._output.clear()
        self._close.clear()
        transport, self._transport = self._transport, None
        return transport

    def _schedule_close(self, transport: Optional[SessionTransport]) -> None:
        task = asyncio.get_running_loop().create_task(self._close_resources(transport))
        self._closers.add(task)
        task.add_done_callback(self._closers.discard)

    async def _close_resources(self, transport: Optional[SessionTransport]) -> None:
        if transport is not None:
            await transport.close()
        if self._owns_login:
            self._owns_login = False
            await self._login.aclose()

    # ─────────────────────────────────────────────────────────────────────────
    # Keepalive
    # ─────────────────────────────────────────────────────────────────────────

    def _start_keepalive(self) -> None:
        interval = self._timings.keepalive_interval
        if interval <= 0:
            return
        self._keepalive_task = self._spawn(self._keepalive_loop(self._attempt_id, interval))

    def _stop_keepalive(self) -> None:
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            self._tasks.discard(self._keepalive_task)
            self._keepalive_task = None

    async def _keepalive_loop(self, attempt: str, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if not self._is_current(attempt) or self._tearing_down:
                return
            self._send(Ping())

    # ─────────────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────────────

    def _relay_credentials(self) -> tuple[str, str]:
        request = self._request
        return (
            request.relay_username or self._config.auth.username,
            request.relay_password or self._config.auth.password,
        )

    def _emit(self, text: str) -> None:
        if self._tearing_down:
            return
        self._output.dispatch(text)

    def _send(self, message: Message) -> None:
        if self._transport is None or not self._transport.is_open:
            log.debug("session.message_dropped", type=message.type.value)
            return
        self._transport.send(encode(message))

    def _set_state(self, new: SessionState) -> None:
        old, self._state = self._state, new
        log.info("session.state_changed", from_state=old.value, to_state=new.value,
                 attempt_id=self._attempt_id)

    def _advance(self, target: SessionState) -> None:
        """Move forward only. Late, out-of-order steps never rewind the state."""
        if self._state is SessionState.CLOSED:
            return
        if _STATE_ORDER[target] > _STATE_ORDER[self._state]:
            self._set_state(target)

    def _is_current(self, attempt: Optional[str]) -> bool:
        return attempt is not None and attempt == self._attempt_id

    def _guarded(self, attempt: str, fn: Callable[..., Any]) -> Callable[..., None]:
        def run(*args: Any) -> None:
            if not self._is_current(attempt):
                log.debug("session.stale_continuation", attempt_id=attempt,
                          callback=getattr(fn, "__name__", repr(fn)))
                return
            fn(*args)
        return run

    def _start_timer(self, name: str, delay: float, callback: Callable[[], Any]) -> None:
        self._cancel_timer(name)
        self._timers[name] = CancellableTimer(
            delay, self._guarded(self._attempt_id, callback)
        ).start()

    def _cancel_timer(self, name: str) -> None:
        timer = self._timers.pop(name, None)
        if timer is not None:
            timer.cancel()

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("session.task_failed", error=str(exc), exc_info=exc)
            if self._attempt_id is not None and self._state is not SessionState.ESTABLISHED:
                wrapped = exc if isinstance(exc, ShellRelayError) else TransportError(
                    self._endpoint, reason=str(exc),
                    message=f"Session to {self._endpoint} failed: {exc}",
                )
                self._fail(wrapped)
