"""
relay/token_store.py — Relay Access Token Store

Maps session-cookie tokens issued by the auth gateway (and by a successful
`auth` message on a channel) to the relay user they belong to.
Uses asyncio.Lock for safe concurrent access from the gateway and every
channel router.
"""

from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Optional

from shellrelay.observability.logger import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class IssuedToken:
    user: str
    expires_at: float


class TokenStore:
    """
    Async-safe token store shared by the auth gateway and the relay server.

    Tokens expire after ttl_seconds; expired entries are dropped on lookup
    and by purge_expired().
    """

    def __init__(self, ttl_seconds: float = 86400, clock: Callable[[], float] = time.monotonic):
        self._tokens: dict[str, IssuedToken] = {}
        self._lock = asyncio.Lock()
        self._ttl = ttl_seconds
        self._clock = clock

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    async def issue(self, user: str) -> str:
        """Create a new token for user and return it."""
        token = secrets.token_urlsafe(32)
        async with self._lock:
            self._tokens[token] = IssuedToken(user=user, expires_at=self._clock() + self._ttl)
        log.info("token_store.issued", user=user)
        return token

    async def resolve(self, token: str) -> Optional[str]:
        """Return the user a live token belongs to, or None."""
        if not token:
            return None
        async with self._lock:
            entry = self._tokens.get(token)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._tokens[token]
                log.info("token_store.expired", user=entry.user)
                return None
            return entry.user

    async def revoke(self, token: str) -> bool:
        """Remove a token. Returns True if it existed."""
        async with self._lock:
            return self._tokens.pop(token, None) is not None

    async def purge_expired(self) -> int:
        now = self._clock()
        async with self._lock:
            stale = [t for t, e in self._tokens.items() if e.expires_at <= now]
            for token in stale:
                del self._tokens[token]
        return len(stale)

    @property
    def count(self) -> int:
        """Synchronous count — use only from non-async contexts (e.g. tests)."""
        return len(self._tokens)
