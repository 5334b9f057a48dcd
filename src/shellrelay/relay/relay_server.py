"""
relay/relay_server.py — WebSocket Relay Server

Accepts client channels with the `websockets` library and hands each one to
its own ChannelRouter. The session cookie set by the auth gateway is read
from the handshake and offered to the router as an implicit credential.

Usage:
    server = RelayServer(settings.relay, tokens, credentials,
                         backend_factory=lambda: SSHShellBackend(settings.backend))
    await server.start()          # starts listening
    await server.wait_closed()    # blocks until shutdown
"""

from __future__ import annotations

import uuid
from http.cookies import CookieError, SimpleCookie
from typing import Optional

import websockets
from websockets.asyncio.server import Server, ServerConnection, serve

from shellrelay.config.settings import RelayConfig
from shellrelay.observability.logger import bind_channel, clear_channel, get_logger
from shellrelay.protocol.messages import Error, ErrorCode, encode
from shellrelay.relay.backend import BackendFactory
from shellrelay.relay.credentials import CredentialStore
from shellrelay.relay.router import ChannelRouter
from shellrelay.relay.token_store import TokenStore

log = get_logger(__name__)


def cookie_token(header: Optional[str], cookie_name: str) -> Optional[str]:
    """Extract one cookie's value from a raw Cookie header."""
    if not header:
        return None
    jar = SimpleCookie()
    try:
        jar.load(header)
    except CookieError:
        return None
    morsel = jar.get(cookie_name)
    return morsel.value if morsel is not None else None


class RelayServer:
    """
    WebSocket relay server.

    One ChannelRouter per connection; routers never share backends.
    """

    def __init__(
        self,
        config: RelayConfig,
        tokens: TokenStore,
        credentials: CredentialStore,
        backend_factory: BackendFactory,
    ):
        self._config = config
        self._tokens = tokens
        self._credentials = credentials
        self._backend_factory = backend_factory
        self._server: Optional[Server] = None
        self._routers: dict[str, ChannelRouter] = {}

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the WebSocket server."""
        self._server = await serve(
            self._handler,
            self._config.host,
            self._config.port,
            max_size=self._config.max_message_bytes,
        )
        log.info(
            "relay.started",
            host=self._config.host,
            port=self.port,
            max_connections=self._config.max_connections,
        )

    async def wait_closed(self) -> None:
        """Block until the server is closed."""
        if self._server:
            await self._server.wait_closed()

    async def shutdown(self) -> None:
        """Close every channel and stop listening."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
        for router in list(self._routers.values()):
            await router.close()
        self._routers.clear()
        log.info("relay.stopped")

    @property
    def port(self) -> Optional[int]:
        """Bound port; differs from config when port is 0."""
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    @property
    def channel_count(self) -> int:
        return len(self._routers)

    # ─────────────────────────────────────────────────────────────────────────
    # Connection handler
    # ─────────────────────────────────────────────────────────────────────────

    async def _handler(self, websocket: ServerConnection) -> None:
        """Handle a single relay channel."""
        if len(self._routers) >= self._config.max_connections:
            err = Error(error="Relay at connection limit.", code=ErrorCode.MAX_CONNECTIONS.value)
            await websocket.send(encode(err))
            await websocket.close()
            return

        channel_id = uuid.uuid4().hex[:12]
        remote = str(getattr(websocket, "remote_address", ("?", 0)))
        bind_channel(channel_id, remote)
        router = ChannelRouter(
            websocket,
            self._tokens,
            self._credentials,
            self._backend_factory,
            channel_id=channel_id,
        )
        self._routers[channel_id] = router
        log.info("relay.channel_opened", channel_id=channel_id, remote=remote)

        try:
            token = cookie_token(websocket.request.headers.get("Cookie"),
                                 self._config.cookie_name)
            if token:
                await router.authenticate_token(token)
            async for raw in websocket:
                await router.handle(raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            await router.close()
            self._routers.pop(channel_id, None)
            log.info("relay.channel_closed", channel_id=channel_id, remote=remote)
            clear_channel()
