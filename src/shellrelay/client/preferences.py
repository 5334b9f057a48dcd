"""
client/preferences.py — Remembered connection-form values

Stores the last host, remote username and relay username in a small JSON
file so the terminal interface can pre-fill them. Each value expires after
ttl_days. Passwords and private keys are never written.

File shape:
    {"last_host": {"value": "10.0.0.5", "expires_at": "2026-11-18T10:00:00+00:00"}, ...}
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from shellrelay.observability.logger import get_logger

log = get_logger(__name__)

REMEMBERED_FIELDS = ("last_host", "last_username", "last_relay_username")


class Preferences:
    def __init__(self, path: str | Path = "~/.shellrelay/preferences.json", ttl_days: int = 30):
        self._path = Path(path).expanduser()
        self._ttl = timedelta(days=ttl_days)

    @property
    def path(self) -> Path:
        return self._path

    def load(self, now: Optional[datetime] = None) -> dict[str, str]:
        """Return unexpired values. A missing or unreadable file yields {}."""
        now = now or datetime.now(timezone.utc)
        raw = self._read()
        values: dict[str, str] = {}
        for name in REMEMBERED_FIELDS:
            entry = raw.get(name)
            if not isinstance(entry, dict):
                continue
            try:
                expires_at = datetime.fromisoformat(entry["expires_at"])
            except (KeyError, TypeError, ValueError):
                continue
            if expires_at > now and isinstance(entry.get("value"), str):
                values[name] = entry["value"]
        return values

    def remember(self, now: Optional[datetime] = None, **values: Optional[str]) -> None:
        """Persist the given fields; unknown names and empty values are skipped."""
        now = now or datetime.now(timezone.utc)
        raw = self._read()
        expires_at = (now + self._ttl).isoformat()
        for name, value in values.items():
            if name not in REMEMBERED_FIELDS or not value:
                continue
            raw[name] = {"value": value, "expires_at": expires_at}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(raw, indent=2), encoding="utf-8")
        log.debug("preferences.saved", path=str(self._path), fields=sorted(values))

    def _read(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log.warning("preferences.unreadable", path=str(self._path), error=str(exc))
            return {}
        return data if isinstance(data, dict) else {}
