"""
interfaces/relay_service.py — Relay process runner

Starts the WebSocket relay and the HTTP auth gateway side by side, sharing
one TokenStore and one CredentialStore, and keeps them up until cancelled.
"""

from __future__ import annotations

import asyncio
from functools import partial

from shellrelay.config.settings import Settings
from shellrelay.relay.auth_gateway import AuthGateway
from shellrelay.relay.backend import SSHShellBackend
from shellrelay.relay.credentials import CredentialStore
from shellrelay.relay.relay_server import RelayServer
from shellrelay.relay.token_store import TokenStore

_PURGE_INTERVAL = 600.0


class RelayService:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.tokens = TokenStore(ttl_seconds=settings.relay.session_ttl_seconds)
        self.credentials = CredentialStore(settings.relay.users)
        self.relay = RelayServer(
            settings.relay,
            self.tokens,
            self.credentials,
            backend_factory=partial(SSHShellBackend, settings.backend),
        )
        self.gateway = AuthGateway(settings.relay, self.tokens, self.credentials)

    async def start(self) -> None:
        await self.gateway.start()
        await self.relay.start()

    async def shutdown(self) -> None:
        await self.relay.shutdown()
        await self.gateway.shutdown()

    async def purge_loop(self, log) -> None:
        while True:
            await asyncio.sleep(_PURGE_INTERVAL)
            purged = await self.tokens.purge_expired()
            if purged:
                log.info("relay.tokens_purged", count=purged)


async def run_relay(settings: Settings, log) -> int:
    """Entry point used by main.py."""
    service = RelayService(settings)
    await service.start()
    log.info(
        "relay.ready",
        ws_port=service.relay.port,
        auth_port=service.gateway.port,
        users=len(service.credentials),
    )
    purge = asyncio.create_task(service.purge_loop(log))
    try:
        await service.relay.wait_closed()
    finally:
        purge.cancel()
        await service.shutdown()
    return 0
