"""
client/transport.py — Session Transport

Ordered, full-duplex text channel between the session manager and the relay:
open → message* → close. The manager never touches the websocket directly.

Send order is preserved end to end: send() only enqueues, and a single
writer task drains the queue onto the socket. close() flushes whatever is
already queued before sending the close frame.

Usage:
    transport = await WebSocketTransport.open(
        "ws://localhost:8080",
        headers={"Cookie": "relay_session=..."},
        on_message=handle_text,
        on_close=handle_close,          # (code, reason)
    )
    transport.send('{"type": "ping"}')
    await transport.close()
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Mapping, Optional

import websockets
from websockets.asyncio.client import ClientConnection, connect

from shellrelay.exceptions import ABNORMAL_CLOSURE, TransportError
from shellrelay.observability.logger import get_logger

log = get_logger(__name__)

MessageHandler = Callable[[str], None]
CloseHandler = Callable[[int, str], None]

_FLUSH = object()   # writer-queue sentinel: stop after draining


class SessionTransport(ABC):
    """Contract the session manager relies on."""

    @property
    @abstractmethod
    def endpoint(self) -> str: ...

    @property
    @abstractmethod
    def is_open(self) -> bool: ...

    @abstractmethod
    def send(self, text: str) -> bool:
        """Queue a text frame. Returns False (and drops it) if not open."""

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None: ...


# Factory signature used by SessionManager so tests can inject a fake.
TransportFactory = Callable[..., Awaitable[SessionTransport]]


class WebSocketTransport(SessionTransport):
    """SessionTransport over a `websockets` client connection."""

    def __init__(
        self,
        endpoint: str,
        ws: ClientConnection,
        on_message: MessageHandler,
        on_close: CloseHandler,
    ) -> None:
        self._endpoint = endpoint
        self._ws = ws
        self._on_message = on_message
        self._on_close = on_close
        self._outgoing: asyncio.Queue = asyncio.Queue()
        self._closing = False
        self._close_reported = False
        self._reader_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None

    @classmethod
    async def open(
        cls,
        endpoint: str,
        *,
        on_message: MessageHandler,
        on_close: CloseHandler,
        headers: Optional[Mapping[str, str]] = None,
        open_timeout: float = 10.0,
        max_size: int = 2**20,
    ) -> "WebSocketTransport":
        """
        Connect to the relay and start the reader/writer tasks.

        Raises:
            TransportError: code 1006 when the relay is unreachable or the
                opening handshake fails.
        """
        try:
            ws = await connect(
                endpoint,
                additional_headers=dict(headers or {}),
                open_timeout=open_timeout,
                max_size=max_size,
            )
        except (OSError, asyncio.TimeoutError, websockets.InvalidHandshake,
                websockets.InvalidURI) as exc:
            log.warning("transport.open_failed", endpoint=endpoint, error=str(exc))
            raise TransportError(endpoint, code=ABNORMAL_CLOSURE, reason=str(exc)) from exc

        transport = cls(endpoint, ws, on_message, on_close)
        transport._reader_task = asyncio.create_task(transport._reader_loop())
        transport._writer_task = asyncio.create_task(transport._writer_loop())
        log.info("transport.opened", endpoint=endpoint)
        return transport

    # ─────────────────────────────────────────────────────────────────────────
    # SessionTransport
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def is_open(self) -> bool:
        return not self._closing and not self._close_reported

    def send(self, text: str) -> bool:
        if not self.is_open:
            log.debug("transport.send_dropped", endpoint=self._endpoint)
            return False
        self._outgoing.put_nowait(text)
        return True

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closing:
            return
        self._closing = True
        self._outgoing.put_nowait(_FLUSH)
        if self._writer_task is not None:
            try:
                await self._writer_task
            except asyncio.CancelledError:
                pass
        await self._ws.close(code, reason)
        if self._reader_task is not None and self._reader_task is not asyncio.current_task():
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        log.info("transport.closed", endpoint=self._endpoint, code=code)

    # ─────────────────────────────────────────────────────────────────────────
    # Background loops
    # ─────────────────────────────────────────────────────────────────────────

    async def _writer_loop(self) -> None:
        while True:
            item = await self._outgoing.get()
            if item is _FLUSH:
                return
            try:
                await self._ws.send(item)
            except websockets.ConnectionClosed:
                # Reader loop reports the close; remaining frames are moot.
                return

    async def _reader_loop(self) -> None:
        try:
            async for raw in self._ws:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                try:
                    self._on_message(raw)
                except Exception as exc:
                    log.error("transport.handler_failed", endpoint=self._endpoint,
                              error=str(exc), exc_info=True)
        except websockets.ConnectionClosed:
            pass
        finally:
            self._report_close()

    def _report_close(self) -> None:
        if self._close_reported:
            return
        self._close_reported = True
        # close_code is None only if the socket never finished closing
        code = self._ws.close_code if self._ws.close_code is not None else ABNORMAL_CLOSURE
        reason = self._ws.close_reason or ""
        if self._writer_task is not None and not self._writer_task.done():
            self._writer_task.cancel()
        log.info("transport.remote_closed", endpoint=self._endpoint, code=code,
                 reason=reason)
        self._on_close(code, reason)
