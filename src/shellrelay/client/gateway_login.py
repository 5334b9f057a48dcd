"""
client/gateway_login.py — Relay Authentication Gateway login

POSTs relay-access credentials to the HTTP login endpoint. On success the
gateway sets a session cookie; the httpx cookie jar held here plays the part
of the browser context, and cookie_header() replays that cookie on the
WebSocket handshake so the relay can authenticate the channel implicitly.
"""

from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse

import httpx

from shellrelay.exceptions import GatewayAuthError
from shellrelay.observability.logger import get_logger

log = get_logger(__name__)

_TIMEOUT = 10.0


def _domain_matches(cookie_domain: str, host: str) -> bool:
    domain = cookie_domain.lstrip(".").lower()
    host = host.lower()
    if domain == host or host.endswith("." + domain):
        return True
    # http.cookiejar stores dotless hosts ("localhost") as "localhost.local"
    return "." not in host and domain == f"{host}.local"


class GatewayLogin:
    """Owns the HTTP client and its cookie jar for one session manager."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = _TIMEOUT):
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def login(self, auth_endpoint: str, username: str, password: str) -> str:
        """
        Log in and return the confirmed relay username.

        Raises:
            GatewayAuthError: network failure, non-JSON body, or success=false.
        """
        try:
            response = await self._client.post(
                auth_endpoint,
                json={"username": username, "password": password},
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            log.warning("gateway_login.unreachable", endpoint=auth_endpoint, error=str(exc))
            raise GatewayAuthError(f"Login endpoint unreachable: {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise GatewayAuthError(
                f"Login endpoint returned a non-JSON body (HTTP {response.status_code})"
            ) from exc

        if not isinstance(body, dict) or not body.get("success"):
            error = body.get("error") if isinstance(body, dict) else None
            log.info("gateway_login.rejected", endpoint=auth_endpoint,
                     status=response.status_code, user=username)
            raise GatewayAuthError(error or f"Login failed (HTTP {response.status_code})")

        user = str(body.get("user") or username)
        log.info("gateway_login.success", endpoint=auth_endpoint, user=user)
        return user

    def cookie_header(self, ws_endpoint: str) -> Optional[str]:
        """Build a Cookie header for the WebSocket handshake, or None."""
        parsed = urlparse(ws_endpoint)
        host = parsed.hostname or ""
        path = parsed.path or "/"
        pairs = []
        for cookie in self._client.cookies.jar:
            if cookie.is_expired():
                continue
            if not _domain_matches(cookie.domain, host):
                continue
            if not path.startswith(cookie.path or "/"):
                continue
            pairs.append(f"{cookie.name}={cookie.value}")
        return "; ".join(pairs) or None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
