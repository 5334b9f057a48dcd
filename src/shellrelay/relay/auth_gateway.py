"""
relay/auth_gateway.py — Relay Authentication Gateway (HTTP login endpoint)

Runs alongside the WebSocket relay on its own port. A successful login
issues a token from the shared TokenStore and sets it as an HttpOnly
cookie; the relay server reads that cookie from the WebSocket handshake
and authenticates the channel without an explicit `auth` message.

Routes:
    POST /auth/login   {username, password} → {success, user | error}
    GET  /health       {status, sessions}

Usage:
    gateway = AuthGateway(settings.relay, tokens, credentials)
    await gateway.start()
    ...
    await gateway.shutdown()
"""

from __future__ import annotations

from typing import Optional

from aiohttp import web

from shellrelay.config.settings import RelayConfig
from shellrelay.observability.logger import get_logger
from shellrelay.relay.credentials import CredentialStore
from shellrelay.relay.token_store import TokenStore

log = get_logger(__name__)


class AuthGateway:
    def __init__(
        self,
        config: RelayConfig,
        tokens: TokenStore,
        credentials: CredentialStore,
    ):
        self._config = config
        self._tokens = tokens
        self._credentials = credentials
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post(self._config.auth_path, self._login_handler)
        app.router.add_get("/health", self._health_handler)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._config.auth_host, self._config.auth_port)
        await self._site.start()
        log.info(
            "auth_gateway.started",
            host=self._config.auth_host,
            port=self.port,
            path=self._config.auth_path,
        )

    async def shutdown(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
        log.info("auth_gateway.stopped")

    @property
    def port(self) -> Optional[int]:
        """Bound port; differs from config when auth_port is 0."""
        if self._runner is None or not self._runner.addresses:
            return None
        return self._runner.addresses[0][1]

    # ─────────────────────────────────────────────────────────────────────────
    # Handlers
    # ─────────────────────────────────────────────────────────────────────────

    async def _login_handler(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            return self._failure(400, "Request body must be JSON")
        if not isinstance(body, dict):
            return self._failure(400, "Request body must be a JSON object")

        username = body.get("username")
        password = body.get("password")
        if not isinstance(username, str) or not isinstance(password, str):
            return self._failure(400, "username and password are required")

        if not self._credentials.verify(username, password):
            log.warning("auth_gateway.login_failed", user=username, remote=request.remote)
            return self._failure(401, "Invalid credentials")

        token = await self._tokens.issue(username)
        response = web.json_response({"success": True, "user": username})
        response.set_cookie(
            self._config.cookie_name,
            token,
            max_age=int(self._tokens.ttl_seconds),
            httponly=True,
            samesite="Lax",
            path="/",
        )
        log.info("auth_gateway.login_success", user=username, remote=request.remote)
        return response

    async def _health_handler(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "sessions": self._tokens.count})

    @staticmethod
    def _failure(status: int, error: str) -> web.Response:
        return web.json_response({"success": False, "error": error}, status=status)
