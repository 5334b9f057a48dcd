"""
interfaces/terminal_cli.py — Terminal interface for a relayed shell

Plays the part of the browser UI: a connection form (prompts pre-filled
from remembered preferences), a SessionManager, an output sink writing raw
shell text to stdout, and a line-based input loop. Each line is sent with a
trailing carriage return, as a terminal would on Enter.

Uses rich for status output and aioconsole for async input.

Type "~." on its own line to disconnect.
"""

from __future__ import annotations

import asyncio
import sys
from functools import partial
from typing import Any, Optional, TextIO

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt

from shellrelay.client.gateway_login import GatewayLogin
from shellrelay.client.preferences import Preferences
from shellrelay.client.session_manager import ConnectionRequest, SessionManager
from shellrelay.config.settings import Settings
from shellrelay.exceptions import ShellRelayError
from shellrelay.observability.logger import get_logger

log = get_logger(__name__)

DISCONNECT_ESCAPE = "~."


class TerminalInterface:
    def __init__(
        self,
        settings: Settings,
        form: Optional[dict[str, Any]] = None,
        *,
        console: Optional[Console] = None,
        output: TextIO = sys.stdout,
    ):
        self.settings = settings
        self.console = console or Console(stderr=True)
        self._form = dict(form or {})
        self._output = output
        self._closed = asyncio.Event()
        self._preferences = Preferences(
            settings.preferences.path, ttl_days=settings.preferences.ttl_days
        )
        self._manager: Optional[SessionManager] = None

    # ── Startup ───────────────────────────────────────────────────────────────

    async def start(self) -> int:
        """Collect the form, connect, then relay input until the session ends."""
        client = self.settings.effective_client
        request = await self._collect_request()
        self._print_banner(request, client.websocket.endpoint)

        manager = SessionManager(
            client,
            timings=self.settings.session,
            login=GatewayLogin(),
        )
        self._manager = manager
        manager.on_output(self._write_output)
        manager.on_close(self._closed.set)

        try:
            with self.console.status("[dim]Connecting to relay...[/]", spinner="dots"):
                await manager.connect(request)
        except ShellRelayError as exc:
            log.warning("terminal.connect_failed", error=str(exc), error_type=type(exc).__name__)
            self.console.print(f"[red]❌ {exc}[/]")
            await manager.disconnect()
            return 1

        self._preferences.remember(
            last_host=request.host,
            last_username=request.username,
            last_relay_username=request.relay_username,
        )
        self.console.print(
            f"[green]✓ Connected[/] to [bold]{request.username}@{request.host}:{request.port}[/]"
            f"  [dim](type {DISCONNECT_ESCAPE} to disconnect)[/]"
        )
        try:
            await self._input_loop(manager)
        finally:
            await manager.disconnect()
        return 0

    def _print_banner(self, request: ConnectionRequest, endpoint: str) -> None:
        self.console.print(
            Panel(
                f"Relay: [cyan]{request.endpoint or endpoint}[/]\n"
                f"Remote: [bold]{request.username}@{request.host}:{request.port}[/]  ·  "
                f"Auth: [cyan]{request.auth_method.value}[/]  ·  "
                f"Relay user: [cyan]{request.relay_username or '-'}[/]",
                title="shellrelay",
                border_style="cyan",
                padding=(0, 2),
            )
        )

    # ── Connection form ───────────────────────────────────────────────────────

    async def _collect_request(self) -> ConnectionRequest:
        """Fill missing form fields from preferences, config and prompts."""
        remembered = self._preferences.load()
        defaults = self.settings.effective_client.auth
        form = self._form

        form.setdefault("host", remembered.get("last_host"))
        form.setdefault("username", remembered.get("last_username"))
        form.setdefault("relay_username",
                        remembered.get("last_relay_username") or defaults.username or None)
        if not form.get("relay_password") and defaults.password:
            form["relay_password"] = defaults.password

        if not form.get("host"):
            form["host"] = await self._ask("Remote host")
        if not form.get("username"):
            form["username"] = await self._ask("Remote username")
        if not form.get("password") and not form.get("private_key"):
            form["password"] = await self._ask("Remote password", password=True)
        if not form.get("relay_username"):
            form["relay_username"] = await self._ask("Relay username")
        if not form.get("relay_password"):
            form["relay_password"] = await self._ask("Relay password", password=True)
        return ConnectionRequest.from_dict(form)

    async def _ask(self, label: str, password: bool = False) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, partial(Prompt.ask, label, password=password, console=self.console)
        )

    # ── I/O loop ──────────────────────────────────────────────────────────────

    def _write_output(self, text: str) -> None:
        self._output.write(text)
        self._output.flush()

    async def _input_loop(self, manager: SessionManager) -> None:
        from aioconsole import ainput

        closed_wait = asyncio.create_task(self._closed.wait())
        try:
            while not self._closed.is_set():
                line_task = asyncio.create_task(ainput(""))
                done, _ = await asyncio.wait(
                    {line_task, closed_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                if closed_wait in done:
                    line_task.cancel()
                    break
                try:
                    line = line_task.result()
                except (EOFError, KeyboardInterrupt):
                    break
                if line.strip() == DISCONNECT_ESCAPE:
                    break
                manager.send(line + "\r")
        finally:
            closed_wait.cancel()

        if self._closed.is_set():
            self.console.print("[dim]Session ended.[/]")
        else:
            self.console.print("[dim]Disconnecting...[/]")


async def run_terminal(settings: Settings, log_, form: Optional[dict[str, Any]] = None) -> int:
    """Entry point used by main.py."""
    interface = TerminalInterface(settings, form)
    log_.info("terminal.interface_starting")
    return await interface.start()
