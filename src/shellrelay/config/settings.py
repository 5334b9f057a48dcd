"""
config/settings.py — shellrelay Runtime Settings

Merges config.yaml (defaults/structure) with .env and environment variables.
Pydantic-powered — all fields are validated and typed.

  - RelayConfig validates ports and the cookie name at parse time
  - ClientConfig mirrors the browser's config.json descriptor
    ({websocket: {endpoint, authEndpoint}, auth: {username, password}})
  - SessionTimingConfig holds the handshake timers (connect timeout,
    grace window, remote-connect delay, close grace, keepalive)
  - validate_all() performs full startup validation and raises ConfigError
    listing every problem found
  - load_settings() respects SHELLRELAY_CONFIG as a fallback when no explicit
    config_path argument is given
"""

from __future__ import annotations

import json
import os
import threading as _threading
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_HOST_KEY_POLICIES = {"auto_add", "warn", "reject"}


def _check_port(name: str, v: int) -> int:
    if not (0 <= v <= 65535):
        raise ValueError(f"{name} must be between 0 and 65535, got {v}")
    return v


def _check_scheme(name: str, url: str, schemes: set[str]) -> str:
    parsed = urlparse(url)
    if parsed.scheme not in schemes or not parsed.netloc:
        raise ValueError(
            f"{name} '{url}' must be an absolute URL with scheme "
            f"{' or '.join(sorted(schemes))}"
        )
    return url


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class RelayConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8080
    auth_host: str = "127.0.0.1"
    auth_port: int = 8081
    auth_path: str = "/auth/login"
    cookie_name: str = "relay_session"
    session_ttl_seconds: int = 86400
    max_connections: int = 10
    max_message_bytes: int = 2**20
    # username → secret ("plain" or "sha256:<hex>")
    users: dict[str, str] = Field(default_factory=dict)

    @field_validator("port")
    @classmethod
    def _valid_port(cls, v: int) -> int:
        return _check_port("relay.port", v)

    @field_validator("auth_port")
    @classmethod
    def _valid_auth_port(cls, v: int) -> int:
        return _check_port("relay.auth_port", v)

    @field_validator("auth_path")
    @classmethod
    def _absolute_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"relay.auth_path must start with '/', got '{v}'")
        return v

    @field_validator("cookie_name")
    @classmethod
    def _valid_cookie_name(cls, v: str) -> str:
        if not v or any(c in v for c in " ;,="):
            raise ValueError(f"relay.cookie_name '{v}' is not a valid cookie name")
        return v

    @field_validator("session_ttl_seconds", "max_connections", "max_message_bytes")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("relay limits must be >= 1")
        return v


class WebSocketEndpoints(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    endpoint: str = "ws://localhost:8080"
    auth_endpoint: str = Field(
        default="http://localhost:8081/auth/login", alias="authEndpoint"
    )

    @field_validator("endpoint")
    @classmethod
    def _ws_scheme(cls, v: str) -> str:
        return _check_scheme("client.websocket.endpoint", v, {"ws", "wss"})

    @field_validator("auth_endpoint")
    @classmethod
    def _http_scheme(cls, v: str) -> str:
        return _check_scheme("client.websocket.authEndpoint", v, {"http", "https"})


class DefaultAuth(BaseModel):
    username: str = ""
    password: str = Field(default="", repr=False)


class ClientConfig(BaseModel):
    """Client defaults — every value can be overridden per ConnectionRequest."""

    websocket: WebSocketEndpoints = Field(default_factory=WebSocketEndpoints)
    auth: DefaultAuth = Field(default_factory=DefaultAuth)

    @classmethod
    def from_json_file(cls, path: str | Path) -> "ClientConfig":
        """Load the browser-style config.json descriptor."""
        with Path(path).open("r", encoding="utf-8") as f:
            return cls.model_validate(json.load(f))


class SessionTimingConfig(BaseModel):
    connect_timeout: float = 10.0
    auth_grace: float = 1.0
    remote_connect_delay: float = 0.5
    close_grace: float = 2.0
    keepalive_interval: float = 30.0   # 0 disables client pings

    @field_validator("connect_timeout", "auth_grace")
    @classmethod
    def _positive_timer(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("session.connect_timeout and session.auth_grace must be > 0")
        return v

    @field_validator("remote_connect_delay", "close_grace", "keepalive_interval")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("session delays must be >= 0")
        return v


class BackendConfig(BaseModel):
    connect_timeout: float = 10.0
    term: str = "xterm-256color"
    cols: int = 80
    rows: int = 24
    host_key_policy: str = "auto_add"

    @field_validator("host_key_policy")
    @classmethod
    def _known_policy(cls, v: str) -> str:
        if v not in _VALID_HOST_KEY_POLICIES:
            raise ValueError(
                f"backend.host_key_policy must be one of "
                f"{sorted(_VALID_HOST_KEY_POLICIES)}, got '{v}'"
            )
        return v


class PreferencesConfig(BaseModel):
    path: str = "~/.shellrelay/preferences.json"
    ttl_days: int = 30

    @field_validator("ttl_days")
    @classmethod
    def _positive_days(cls, v: int) -> int:
        if v < 1:
            raise ValueError("preferences.ttl_days must be >= 1")
        return v


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 20
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    shellrelay runtime settings.

    Priority (highest to lowest):
      1. Environment variables
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Environment overrides ----------------------------------------------
    auth_username: Optional[str] = Field(default=None, alias="AUTH_USERNAME")
    auth_password: Optional[str] = Field(default=None, alias="AUTH_PASSWORD", repr=False)
    websocket_endpoint: Optional[str] = Field(default=None, alias="WEBSOCKET_ENDPOINT")
    websocket_auth_endpoint: Optional[str] = Field(
        default=None, alias="WEBSOCKET_AUTH_ENDPOINT"
    )

    # -- Structured config (from config.yaml) --------------------------------
    relay: RelayConfig = Field(default_factory=RelayConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)
    session: SessionTimingConfig = Field(default_factory=SessionTimingConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    preferences: PreferencesConfig = Field(default_factory=PreferencesConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("relay", mode="before")
    @classmethod
    def _coerce_relay(cls, v: Any) -> Any:
        return RelayConfig(**v) if isinstance(v, dict) else v

    @field_validator("client", mode="before")
    @classmethod
    def _coerce_client(cls, v: Any) -> Any:
        return ClientConfig.model_validate(v) if isinstance(v, dict) else v

    @field_validator("session", mode="before")
    @classmethod
    def _coerce_session(cls, v: Any) -> Any:
        return SessionTimingConfig(**v) if isinstance(v, dict) else v

    @field_validator("backend", mode="before")
    @classmethod
    def _coerce_backend(cls, v: Any) -> Any:
        return BackendConfig(**v) if isinstance(v, dict) else v

    @field_validator("preferences", mode="before")
    @classmethod
    def _coerce_preferences(cls, v: Any) -> Any:
        return PreferencesConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def effective_client(self) -> ClientConfig:
        """ClientConfig with environment overrides applied on top of YAML."""
        websocket = self.client.websocket.model_copy(update={
            k: v for k, v in (
                ("endpoint", self.websocket_endpoint),
                ("auth_endpoint", self.websocket_auth_endpoint),
            ) if v
        })
        auth = self.client.auth.model_copy(update={
            k: v for k, v in (
                ("username", self.auth_username),
                ("password", self.auth_password),
            ) if v
        })
        # model_copy(update=...) skips validation, so re-validate overrides
        return ClientConfig.model_validate({
            "websocket": {
                "endpoint": websocket.endpoint,
                "authEndpoint": websocket.auth_endpoint,
            },
            "auth": auth.model_dump(),
        })

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    @property
    def log_json_format(self) -> bool:
        return self.logging.json_format

    @property
    def log_console_output(self) -> bool:
        return self.logging.console_output

    def validate_required_for_interface(self, interface: str) -> list[str]:
        """Return the list of missing required values for an interface."""
        missing = []
        if interface == "relay" and not self.relay.users:
            missing.append("relay.users")
        return missing

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic field validators catch type/value errors at parse time; this
        method catches cross-field problems they can't see.
        """
        errors: list[str] = []

        # ── Relay and auth gateway must not share a listening socket ─────────
        if (
            self.relay.port != 0
            and self.relay.port == self.relay.auth_port
            and self.relay.host == self.relay.auth_host
        ):
            errors.append(
                f"relay.port and relay.auth_port are both {self.relay.port} on "
                f"{self.relay.host}. The WebSocket relay and the HTTP login "
                f"endpoint need separate ports."
            )

        # ── User secrets must not be empty ──────────────────────────────────
        for user, secret in self.relay.users.items():
            if not secret:
                errors.append(f"relay.users['{user}'] has an empty secret.")
            elif secret.startswith("sha256:") and len(secret) != len("sha256:") + 64:
                errors.append(
                    f"relay.users['{user}'] looks like a sha256 digest but is "
                    f"not 64 hex characters."
                )

        # ── Grace window must fit inside the connect timeout ────────────────
        timings = self.session
        if timings.auth_grace + timings.remote_connect_delay >= timings.connect_timeout:
            errors.append(
                "session.auth_grace + session.remote_connect_delay must be "
                "smaller than session.connect_timeout, otherwise every "
                "fallback handshake times out."
            )

        # ── Environment endpoint overrides must be well-formed ──────────────
        try:
            self.effective_client
        except ValueError as exc:
            errors.append(f"Environment endpoint override is invalid: {exc}")

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nshellrelay startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.RLock()

_KNOWN_SECTIONS = {"relay", "client", "session", "backend", "preferences", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. SHELLRELAY_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("SHELLRELAY_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading from the default config
    path on first use.
    """
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            load_settings()
    return _singleton  # type: ignore[return-value]
