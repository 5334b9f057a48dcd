"""
tests/unit/test_backend.py — SSH shell backend tests (paramiko mocked)
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import paramiko
import pytest

from shellrelay.config.settings import BackendConfig
from shellrelay.exceptions import RemoteSessionError
from shellrelay.protocol.messages import AuthMethod, RemoteConfig
from shellrelay.relay.backend import SSHShellBackend, load_private_key


def _mock_ssh_client(recv_chunks=()):
    client = MagicMock()
    channel = MagicMock()
    channel.recv.side_effect = list(recv_chunks)
    client.get_transport.return_value.open_session.return_value = channel
    return client, channel


PASSWORD_CFG = RemoteConfig(host="10.0.0.5", port=22, username="root", password="x")


class TestOpen:
    @pytest.mark.asyncio
    async def test_password_auth_opens_pty_shell(self):
        client, channel = _mock_ssh_client()
        backend = SSHShellBackend(BackendConfig(cols=120, rows=40))
        with patch("shellrelay.relay.backend.paramiko.SSHClient", return_value=client):
            await backend.open(PASSWORD_CFG)

        kwargs = client.connect.call_args.kwargs
        assert kwargs["hostname"] == "10.0.0.5"
        assert kwargs["username"] == "root"
        assert kwargs["password"] == "x"
        assert "pkey" not in kwargs
        assert kwargs["look_for_keys"] is False
        channel.get_pty.assert_called_once_with(term="xterm-256color", width=120, height=40)
        channel.invoke_shell.assert_called_once()

    @pytest.mark.asyncio
    async def test_key_auth_passes_loaded_key(self):
        client, _ = _mock_ssh_client()
        key = MagicMock(spec=paramiko.PKey)
        cfg = RemoteConfig(host="h", username="u", private_key="KEY",
                           auth_method=AuthMethod.KEY)
        with patch("shellrelay.relay.backend.paramiko.SSHClient", return_value=client), \
             patch("shellrelay.relay.backend.load_private_key", return_value=key):
            await SSHShellBackend().open(cfg)
        kwargs = client.connect.call_args.kwargs
        assert kwargs["pkey"] is key
        assert "password" not in kwargs

    @pytest.mark.asyncio
    async def test_auth_failure_becomes_remote_session_error(self):
        client, _ = _mock_ssh_client()
        client.connect.side_effect = paramiko.AuthenticationException("bad password")
        with patch("shellrelay.relay.backend.paramiko.SSHClient", return_value=client):
            with pytest.raises(RemoteSessionError, match="root@10.0.0.5:22"):
                await SSHShellBackend().open(PASSWORD_CFG)
        client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_unreachable_host(self):
        client, _ = _mock_ssh_client()
        client.connect.side_effect = OSError("No route to host")
        with patch("shellrelay.relay.backend.paramiko.SSHClient", return_value=client):
            with pytest.raises(RemoteSessionError, match="No route to host"):
                await SSHShellBackend().open(PASSWORD_CFG)

    def test_malformed_private_key(self):
        with pytest.raises(RemoteSessionError, match="private key"):
            load_private_key("not a key")


class TestIO:
    @pytest.mark.asyncio
    async def test_read_decodes_split_utf8_and_reports_eof(self):
        snowman = "☃".encode("utf-8")
        client, _ = _mock_ssh_client([b"hi " + snowman[:1], snowman[1:], b""])
        backend = SSHShellBackend()
        with patch("shellrelay.relay.backend.paramiko.SSHClient", return_value=client):
            await backend.open(PASSWORD_CFG)
        assert await backend.read() == "hi "
        assert await backend.read() == "☃"
        assert await backend.read() is None

    @pytest.mark.asyncio
    async def test_write_encodes_utf8(self):
        client, channel = _mock_ssh_client()
        backend = SSHShellBackend()
        with patch("shellrelay.relay.backend.paramiko.SSHClient", return_value=client):
            await backend.open(PASSWORD_CFG)
        await backend.write("ls ☃\r")
        channel.sendall.assert_called_once_with("ls ☃\r".encode("utf-8"))

    @pytest.mark.asyncio
    async def test_write_before_open(self):
        with pytest.raises(RemoteSessionError):
            await SSHShellBackend().write("ls\r")

    @pytest.mark.asyncio
    async def test_close_releases_channel_and_client(self):
        client, channel = _mock_ssh_client()
        backend = SSHShellBackend()
        with patch("shellrelay.relay.backend.paramiko.SSHClient", return_value=client):
            await backend.open(PASSWORD_CFG)
        await backend.close()
        channel.close.assert_called_once()
        client.close.assert_called_once()
        assert await backend.read() is None
