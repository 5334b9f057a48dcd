from shellrelay.config.settings import (
    ClientConfig,
    ConfigError,
    Settings,
    SessionTimingConfig,
    get_settings,
    load_settings,
)

__all__ = [
    "ClientConfig",
    "ConfigError",
    "Settings",
    "SessionTimingConfig",
    "get_settings",
    "load_settings",
]
