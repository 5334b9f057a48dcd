"""
client/timers.py — Cancellable timers and resolve-once gates

Two small primitives the session manager composes for its handshake races:

  CancellableTimer  one-shot callback on the running loop; cancel() before it
                    fires and it never runs.
  ResolveOnce       a single-fire latch. The first fire() wins and every later
                    fire() returns False, so the grace timer and an inbound
                    confirmation can both "try" and exactly one path proceeds.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional


class CancellableTimer:
    """One-shot timer bound to the event loop that is running at start()."""

    def __init__(self, delay: float, callback: Callable[[], Any]) -> None:
        self._delay = delay
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None
        self._fired = False

    def start(self) -> "CancellableTimer":
        if self._handle is not None or self._fired:
            return self
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self._delay, self._fire)
        return self

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    @property
    def active(self) -> bool:
        """True while started and neither fired nor cancelled."""
        return self._handle is not None

    @property
    def fired(self) -> bool:
        return self._fired

    def _fire(self) -> None:
        self._handle = None
        self._fired = True
        self._callback()


class ResolveOnce:
    """Single-fire gate. Only the first fire() records a value."""

    _UNSET = object()

    def __init__(self) -> None:
        self._value: Any = self._UNSET

    def fire(self, value: Any = True) -> bool:
        if self._value is not self._UNSET:
            return False
        self._value = value
        return True

    @property
    def settled(self) -> bool:
        return self._value is not self._UNSET

    @property
    def value(self) -> Any:
        return None if self._value is self._UNSET else self._value
