"""shellrelay — remote shell sessions through an authenticating relay."""

__version__ = "0.1.0"
