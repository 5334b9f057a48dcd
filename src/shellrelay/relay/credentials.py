"""
relay/credentials.py — Relay-access credential check

Users come from `relay.users` in config.yaml. A secret is either the plain
password or "sha256:<hex digest of the password>". Comparison is constant
time in both cases.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Mapping

_SHA256_PREFIX = "sha256:"


def hash_secret(password: str) -> str:
    """Produce the "sha256:<hex>" form accepted in relay.users."""
    return _SHA256_PREFIX + hashlib.sha256(password.encode("utf-8")).hexdigest()


class CredentialStore:
    def __init__(self, users: Mapping[str, str]):
        self._users = dict(users)

    def __len__(self) -> int:
        return len(self._users)

    def verify(self, username: str, password: str) -> bool:
        secret = self._users.get(username)
        if not secret or not password:
            return False
        if secret.startswith(_SHA256_PREFIX):
            candidate = hash_secret(password)
            return hmac.compare_digest(candidate.encode(), secret.lower().encode())
        return hmac.compare_digest(password.encode("utf-8"), secret.encode("utf-8"))
