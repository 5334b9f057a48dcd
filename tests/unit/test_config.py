"""
tests/unit/test_config.py — Settings validation tests

Covers:
  - Relay ports, auth path and cookie name are validated at parse time
  - Client endpoints must carry ws(s)/http(s) schemes
  - authEndpoint alias from config.json is accepted
  - Timer bounds (positive / non-negative)
  - Environment overrides (AUTH_USERNAME, WEBSOCKET_ENDPOINT, ...) win over YAML
  - validate_all() raises ConfigError with a numbered list
  - SHELLRELAY_CONFIG env var is respected by load_settings()
"""

from __future__ import annotations

import json
import os
import textwrap
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError


# ── Helpers ───────────────────────────────────────────────────────────────────

def _make_settings(**overrides):
    """Build a Settings object from keyword overrides (no YAML file needed)."""
    from shellrelay.config.settings import Settings
    return Settings(**overrides)


# ── RelayConfig ───────────────────────────────────────────────────────────────

class TestRelayConfig:
    def test_defaults(self):
        from shellrelay.config.settings import RelayConfig
        cfg = RelayConfig()
        assert cfg.port == 8080
        assert cfg.auth_port == 8081
        assert cfg.auth_path == "/auth/login"
        assert cfg.cookie_name == "relay_session"

    @pytest.mark.parametrize("port", [-1, 65536])
    def test_port_out_of_range(self, port):
        from shellrelay.config.settings import RelayConfig
        with pytest.raises(ValidationError, match="relay.port"):
            RelayConfig(port=port)

    def test_port_zero_allowed_for_ephemeral(self):
        from shellrelay.config.settings import RelayConfig
        assert RelayConfig(port=0, auth_port=0).port == 0

    def test_auth_path_must_be_absolute(self):
        from shellrelay.config.settings import RelayConfig
        with pytest.raises(ValidationError, match="auth_path"):
            RelayConfig(auth_path="auth/login")

    @pytest.mark.parametrize("name", ["", "bad name", "a;b", "a=b"])
    def test_invalid_cookie_name(self, name):
        from shellrelay.config.settings import RelayConfig
        with pytest.raises(ValidationError, match="cookie_name"):
            RelayConfig(cookie_name=name)


# ── ClientConfig ──────────────────────────────────────────────────────────────

class TestClientConfig:
    def test_auth_endpoint_alias(self):
        from shellrelay.config.settings import ClientConfig
        cfg = ClientConfig.model_validate({
            "websocket": {"endpoint": "wss://relay.example.com",
                          "authEndpoint": "https://relay.example.com/auth/login"},
            "auth": {"username": "admin", "password": "y"},
        })
        assert cfg.websocket.auth_endpoint == "https://relay.example.com/auth/login"
        assert cfg.auth.username == "admin"

    def test_ws_endpoint_needs_ws_scheme(self):
        from shellrelay.config.settings import WebSocketEndpoints
        with pytest.raises(ValidationError, match="ws or wss"):
            WebSocketEndpoints(endpoint="http://relay.example.com")

    def test_auth_endpoint_needs_http_scheme(self):
        from shellrelay.config.settings import WebSocketEndpoints
        with pytest.raises(ValidationError, match="http or https"):
            WebSocketEndpoints(auth_endpoint="ws://relay.example.com/auth/login")

    def test_from_json_file(self, tmp_path):
        from shellrelay.config.settings import ClientConfig
        path = tmp_path / "config.json"
        path.write_text(json.dumps({
            "websocket": {"endpoint": "ws://10.0.0.1:8080",
                          "authEndpoint": "http://10.0.0.1:8081/auth/login"},
            "auth": {"username": "admin", "password": "y"},
        }))
        cfg = ClientConfig.from_json_file(path)
        assert cfg.websocket.endpoint == "ws://10.0.0.1:8080"
        assert cfg.auth.password == "y"

    def test_password_hidden_from_repr(self):
        from shellrelay.config.settings import DefaultAuth
        assert "hunter2" not in repr(DefaultAuth(username="a", password="hunter2"))


# ── Timers, backend, logging ──────────────────────────────────────────────────

class TestSessionTimingConfig:
    def test_defaults(self):
        from shellrelay.config.settings import SessionTimingConfig
        cfg = SessionTimingConfig()
        assert cfg.auth_grace == 1.0
        assert cfg.remote_connect_delay == 0.5
        assert cfg.close_grace == 2.0

    @pytest.mark.parametrize("field", ["connect_timeout", "auth_grace"])
    def test_must_be_positive(self, field):
        from shellrelay.config.settings import SessionTimingConfig
        with pytest.raises(ValidationError):
            SessionTimingConfig(**{field: 0})

    def test_zero_keepalive_disables(self):
        from shellrelay.config.settings import SessionTimingConfig
        assert SessionTimingConfig(keepalive_interval=0).keepalive_interval == 0

    def test_negative_delay_rejected(self):
        from shellrelay.config.settings import SessionTimingConfig
        with pytest.raises(ValidationError):
            SessionTimingConfig(close_grace=-1)


class TestOtherSections:
    def test_unknown_host_key_policy(self):
        from shellrelay.config.settings import BackendConfig
        with pytest.raises(ValidationError, match="host_key_policy"):
            BackendConfig(host_key_policy="trust_everything")

    def test_log_level_normalised(self):
        from shellrelay.config.settings import LoggingConfig
        assert LoggingConfig(level="debug").level == "DEBUG"

    def test_invalid_log_level(self):
        from shellrelay.config.settings import LoggingConfig
        with pytest.raises(ValidationError, match="logging.level"):
            LoggingConfig(level="VERBOSE")

    def test_preferences_ttl_positive(self):
        from shellrelay.config.settings import PreferencesConfig
        with pytest.raises(ValidationError):
            PreferencesConfig(ttl_days=0)


# ── Environment overrides ─────────────────────────────────────────────────────

class TestEnvironmentOverrides:
    def test_env_wins_over_yaml(self, monkeypatch):
        monkeypatch.setenv("AUTH_USERNAME", "envuser")
        monkeypatch.setenv("AUTH_PASSWORD", "envpass")
        monkeypatch.setenv("WEBSOCKET_ENDPOINT", "wss://relay.example.com")
        monkeypatch.setenv("WEBSOCKET_AUTH_ENDPOINT", "https://relay.example.com/auth/login")
        settings = _make_settings(client={
            "websocket": {"endpoint": "ws://localhost:9000"},
            "auth": {"username": "yamluser", "password": "yamlpass"},
        })
        client = settings.effective_client
        assert client.websocket.endpoint == "wss://relay.example.com"
        assert client.websocket.auth_endpoint == "https://relay.example.com/auth/login"
        assert client.auth.username == "envuser"
        assert client.auth.password == "envpass"

    def test_yaml_used_without_env(self):
        settings = _make_settings(client={
            "websocket": {"endpoint": "ws://localhost:9000"},
            "auth": {"username": "yamluser"},
        })
        client = settings.effective_client
        assert client.websocket.endpoint == "ws://localhost:9000"
        assert client.auth.username == "yamluser"

    def test_bad_env_endpoint_reported_by_validate_all(self, monkeypatch):
        from shellrelay.config.settings import ConfigError
        monkeypatch.setenv("WEBSOCKET_ENDPOINT", "http://not-a-websocket")
        settings = _make_settings()
        with pytest.raises(ConfigError, match="Environment endpoint override"):
            settings.validate_all()


# ── validate_all() ────────────────────────────────────────────────────────────

class TestValidateAll:
    def test_defaults_pass(self):
        _make_settings().validate_all()

    def test_shared_port_rejected(self):
        from shellrelay.config.settings import ConfigError
        settings = _make_settings(relay={"port": 9000, "auth_port": 9000})
        with pytest.raises(ConfigError, match="separate ports"):
            settings.validate_all()

    def test_empty_user_secret(self):
        from shellrelay.config.settings import ConfigError
        settings = _make_settings(relay={"users": {"admin": ""}})
        with pytest.raises(ConfigError, match="empty secret"):
            settings.validate_all()

    def test_malformed_digest(self):
        from shellrelay.config.settings import ConfigError
        settings = _make_settings(relay={"users": {"admin": "sha256:abc"}})
        with pytest.raises(ConfigError, match="64 hex"):
            settings.validate_all()

    def test_grace_longer_than_timeout(self):
        from shellrelay.config.settings import ConfigError
        settings = _make_settings(session={"connect_timeout": 1, "auth_grace": 1})
        with pytest.raises(ConfigError, match="connect_timeout"):
            settings.validate_all()

    def test_errors_are_numbered(self):
        from shellrelay.config.settings import ConfigError
        settings = _make_settings(
            relay={"port": 9000, "auth_port": 9000, "users": {"admin": ""}},
        )
        with pytest.raises(ConfigError) as exc_info:
            settings.validate_all()
        message = str(exc_info.value)
        assert "2 configuration problem(s)" in message
        assert "  1. " in message
        assert "  2. " in message

    def test_relay_interface_requires_users(self):
        assert _make_settings().validate_required_for_interface("relay") == ["relay.users"]
        settings = _make_settings(relay={"users": {"admin": "y"}})
        assert settings.validate_required_for_interface("relay") == []
        assert _make_settings().validate_required_for_interface("terminal") == []


# ── Config path resolution ────────────────────────────────────────────────────

class TestConfigPath:
    def test_explicit_path_takes_priority(self, tmp_path):
        """Explicit config_path arg overrides env var."""
        from shellrelay.config.settings import _resolve_config_path
        cfg_file = tmp_path / "custom.yaml"
        env_file = tmp_path / "env.yaml"

        with patch.dict(os.environ, {"SHELLRELAY_CONFIG": str(env_file)}):
            resolved = _resolve_config_path(str(cfg_file))
        assert resolved == Path(str(cfg_file))

    def test_env_var_used_when_no_explicit_path(self, tmp_path):
        from shellrelay.config.settings import _resolve_config_path
        env_file = tmp_path / "env_config.yaml"
        with patch.dict(os.environ, {"SHELLRELAY_CONFIG": str(env_file)}):
            resolved = _resolve_config_path(None)
        assert resolved == Path(str(env_file))

    def test_default_path_when_no_arg_no_env(self):
        from shellrelay.config.settings import _resolve_config_path
        assert _resolve_config_path(None) == Path("config/config.yaml")

    def test_load_settings_from_file(self, tmp_path):
        """load_settings reads a custom YAML file and replaces the singleton."""
        import shellrelay.config.settings as cs

        cfg_file = tmp_path / "test_config.yaml"
        cfg_file.write_text(textwrap.dedent("""
            relay:
              port: 9100
              auth_port: 9101
              users:
                admin: "y"
            session:
              auth_grace: 0.5
            unknown_section:
              ignored: true
        """))
        settings = cs.load_settings(cfg_file)
        assert settings.relay.port == 9100
        assert settings.relay.users == {"admin": "y"}
        assert settings.session.auth_grace == 0.5
        assert cs.get_settings() is settings

    def test_missing_file_gives_defaults(self, tmp_path):
        from shellrelay.config.settings import load_settings
        settings = load_settings(tmp_path / "absent.yaml")
        assert settings.relay.port == 8080
