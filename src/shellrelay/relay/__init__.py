"""
relay/ — relay-side half of the protocol

RelayServer (WebSocket channels) and AuthGateway (HTTP login) share one
TokenStore and one CredentialStore; each channel gets its own ChannelRouter.
"""

from shellrelay.relay.auth_gateway import AuthGateway
from shellrelay.relay.backend import ShellBackend, SSHShellBackend
from shellrelay.relay.credentials import CredentialStore
from shellrelay.relay.relay_server import RelayServer
from shellrelay.relay.router import ChannelRouter, ChannelState
from shellrelay.relay.token_store import TokenStore

__all__ = [
    "AuthGateway",
    "ChannelRouter",
    "ChannelState",
    "CredentialStore",
    "RelayServer",
    "ShellBackend",
    "SSHShellBackend",
    "TokenStore",
]
