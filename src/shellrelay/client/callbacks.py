"""
client/callbacks.py — Token-keyed callback registry

Output sinks and close listeners register here and get back an opaque token.
Removal is by token. Dispatch walks a snapshot of the registry and re-checks
membership before each call, so a callback removed during dispatch (by itself
or by an earlier callback) is never invoked afterwards.
"""

from __future__ import annotations

import itertools
from typing import Any, Callable, Generic, TypeVar

from shellrelay.observability.logger import get_logger

log = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

_token_counter = itertools.count(1)


class CallbackToken:
    """Opaque handle returned by CallbackRegistry.add()."""

    __slots__ = ("_id", "_kind")

    def __init__(self, kind: str) -> None:
        self._id = next(_token_counter)
        self._kind = kind

    def __repr__(self) -> str:
        return f"<CallbackToken {self._kind}#{self._id}>"


class CallbackRegistry(Generic[F]):
    def __init__(self, kind: str) -> None:
        self._kind = kind
        self._callbacks: dict[CallbackToken, F] = {}

    def add(self, callback: F) -> CallbackToken:
        token = CallbackToken(self._kind)
        self._callbacks[token] = callback
        return token

    def remove(self, token: CallbackToken) -> bool:
        return self._callbacks.pop(token, None) is not None

    def clear(self) -> None:
        self._callbacks.clear()

    def __len__(self) -> int:
        return len(self._callbacks)

    def __contains__(self, token: object) -> bool:
        return token in self._callbacks

    def dispatch(self, *args: Any) -> int:
        """
        Invoke every registered callback with *args. Returns how many ran.

        A callback that raises is logged and skipped; the rest still run.
        """
        ran = 0
        for token, callback in list(self._callbacks.items()):
            if token not in self._callbacks:
                continue
            try:
                callback(*args)
            except Exception as exc:
                log.error(
                    "callbacks.dispatch_failed",
                    kind=self._kind,
                    token=repr(token),
                    error=str(exc),
                    exc_info=True,
                )
            ran += 1
        return ran
