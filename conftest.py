"""
Test conftest — isolate relay/client environment variables so that
Settings() tests are not affected by values in the developer's or CI
environment.
"""
import pytest

_ENV_VARS = [
    "AUTH_USERNAME",
    "AUTH_PASSWORD",
    "WEBSOCKET_ENDPOINT",
    "WEBSOCKET_AUTH_ENDPOINT",
    "SHELLRELAY_CONFIG",
]


@pytest.fixture(autouse=True)
def _clear_relay_env(monkeypatch):
    """Remove relay env vars for every test so Settings() behaves as if
    none are set unless the test explicitly provides them.
    Also disables .env file loading so local developer .env files don't
    leak real credentials into tests."""
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)

    # Disable .env file loading by patching Settings.model_config
    import shellrelay.config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
