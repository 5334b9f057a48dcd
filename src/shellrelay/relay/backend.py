"""
relay/backend.py — Remote Shell Backend

The router treats the remote shell as an opaque capability:
open(config) → write(data)* / read()* → close(). read() returns None at EOF.

SSHShellBackend implements it with paramiko. paramiko is blocking, so every
call runs in the event loop's default executor; the router itself never
blocks.
"""

from __future__ import annotations

import asyncio
import codecs
import io
from abc import ABC, abstractmethod
from functools import partial
from typing import Any, Callable, Optional

import paramiko

from shellrelay.config.settings import BackendConfig
from shellrelay.exceptions import RemoteSessionError
from shellrelay.observability.logger import get_logger
from shellrelay.protocol.messages import AuthMethod, RemoteConfig

log = get_logger(__name__)

_READ_SIZE = 4096

_HOST_KEY_POLICIES: dict[str, Callable[[], paramiko.MissingHostKeyPolicy]] = {
    "auto_add": paramiko.AutoAddPolicy,
    "warn": paramiko.WarningPolicy,
    "reject": paramiko.RejectPolicy,
}

# Tried in order when the key type is not stated in the material
_KEY_TYPES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


class ShellBackend(ABC):
    """Contract between the router and a remote shell."""

    @abstractmethod
    async def open(self, config: RemoteConfig) -> None:
        """Connect and start an interactive shell. Raises RemoteSessionError."""

    @abstractmethod
    async def write(self, data: str) -> None: ...

    @abstractmethod
    async def read(self) -> Optional[str]:
        """Next chunk of decoded output, or None when the shell has ended."""

    @abstractmethod
    async def close(self) -> None: ...


BackendFactory = Callable[[], ShellBackend]


def load_private_key(material: str) -> paramiko.PKey:
    """Parse PEM/OpenSSH private key text. Raises RemoteSessionError."""
    errors = []
    for key_cls in _KEY_TYPES:
        try:
            return key_cls.from_private_key(io.StringIO(material))
        except (paramiko.SSHException, ValueError) as exc:
            errors.append(f"{key_cls.__name__}: {exc}")
    raise RemoteSessionError("Unsupported or malformed private key (" + "; ".join(errors) + ")")


class SSHShellBackend(ShellBackend):
    """Interactive SSH shell over paramiko with a PTY."""

    def __init__(self, config: Optional[BackendConfig] = None):
        self._config = config or BackendConfig()
        self._client: Optional[paramiko.SSHClient] = None
        self._channel: Optional[paramiko.Channel] = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    async def _run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args, **kwargs))

    async def open(self, config: RemoteConfig) -> None:
        try:
            await self._run(self._open_blocking, config)
        except RemoteSessionError:
            await self.close()
            raise
        except (paramiko.SSHException, OSError) as exc:
            await self.close()
            raise RemoteSessionError(
                f"SSH connection to {config.username}@{config.host}:{config.port} failed: {exc}"
            ) from exc

    def _open_blocking(self, config: RemoteConfig) -> None:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(_HOST_KEY_POLICIES[self._config.host_key_policy]())
        self._client = client

        kwargs: dict[str, Any] = {
            "hostname": config.host,
            "port": config.port,
            "username": config.username,
            "timeout": self._config.connect_timeout,
            "look_for_keys": False,
            "allow_agent": False,
        }
        if config.auth_method is AuthMethod.KEY:
            if not config.private_key:
                raise RemoteSessionError("authMethod is 'key' but no privateKey was given")
            kwargs["pkey"] = load_private_key(config.private_key)
        else:
            kwargs["password"] = config.password or ""

        log.info("backend.connecting", host=config.host, port=config.port,
                 user=config.username, auth_method=config.auth_method.value)
        client.connect(**kwargs)

        channel = client.get_transport().open_session()
        channel.get_pty(term=self._config.term, width=self._config.cols,
                        height=self._config.rows)
        channel.invoke_shell()
        self._channel = channel
        log.info("backend.connected", host=config.host, port=config.port)

    async def write(self, data: str) -> None:
        if self._channel is None:
            raise RemoteSessionError("Shell is not open")
        try:
            await self._run(self._channel.sendall, data.encode("utf-8"))
        except (paramiko.SSHException, OSError) as exc:
            raise RemoteSessionError(f"Write to remote shell failed: {exc}") from exc

    async def read(self) -> Optional[str]:
        channel = self._channel
        if channel is None:
            return None
        while True:
            try:
                chunk = await self._run(channel.recv, _READ_SIZE)
            except (paramiko.SSHException, OSError) as exc:
                raise RemoteSessionError(f"Read from remote shell failed: {exc}") from exc
            if not chunk:
                tail = self._decoder.decode(b"", final=True)
                return tail or None
            text = self._decoder.decode(chunk)
            # A chunk that ends mid-character decodes to "" until the rest arrives
            if text:
                return text

    async def close(self) -> None:
        channel, client = self._channel, self._client
        self._channel = None
        self._client = None
        if channel is not None:
            await self._run(channel.close)
        if client is not None:
            await self._run(client.close)
            log.info("backend.closed")
