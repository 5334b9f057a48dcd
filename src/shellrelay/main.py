"""
main.py — shellrelay Entry Point

Usage:
    shellrelay                                   # terminal client, default settings
    shellrelay --interface relay                 # run the relay + auth gateway
    shellrelay --host 10.0.0.5 --user root --relay-user admin
    shellrelay --key-file ~/.ssh/id_ed25519 --host 10.0.0.5 --user root
    shellrelay --client-config config.json       # browser-style client descriptor
    shellrelay hash-password                     # print a sha256: secret for relay.users
    shellrelay --log-level DEBUG
    shellrelay --config path/to/config.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import sys
from pathlib import Path

from dotenv import load_dotenv

# .env in the working directory, before Settings reads the environment
load_dotenv(dotenv_path=Path.cwd() / ".env")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="shellrelay",
        description="shellrelay — remote shell sessions through an authenticating relay",
    )
    parser.add_argument(
        "subcommand",
        nargs="?",
        choices=["hash-password"],
        default=None,
        help="'hash-password' — print a sha256 secret for relay.users and exit.",
    )
    parser.add_argument(
        "--interface",
        choices=["terminal", "relay"],
        default="terminal",
        help="What to start (default: terminal).",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: $SHELLRELAY_CONFIG or config/config.yaml)",
    )
    parser.add_argument(
        "--client-config",
        default=None,
        help="Path to a config.json client descriptor ({websocket, auth}).",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override log level from config",
    )

    form = parser.add_argument_group("connection (terminal interface)")
    form.add_argument("--host", default=None, help="Remote host")
    form.add_argument("--port", type=int, default=22, help="Remote SSH port (default: 22)")
    form.add_argument("--user", dest="username", default=None, help="Remote username")
    form.add_argument("--key-file", default=None,
                      help="Private key file; selects key auth instead of a password")
    form.add_argument("--relay-user", dest="relay_username", default=None,
                      help="Relay-access username")
    form.add_argument("--endpoint", default=None, help="Relay WebSocket endpoint override")
    form.add_argument("--auth-endpoint", default=None, help="Relay login endpoint override")
    return parser.parse_args(argv)


def bootstrap(args: argparse.Namespace):
    """
    Load config, validate it fully, and set up logging.
    Returns (settings, log) ready for use.

    Exits with code 1 (after printing a clear message) if:
      - config.yaml has invalid values (Pydantic ValidationError)
      - cross-field problems are found (ConfigError from validate_all())
    """
    from pydantic import ValidationError

    from shellrelay.config.settings import ClientConfig, ConfigError, load_settings
    from shellrelay.observability.logger import get_logger, setup_logging

    # -- Load and parse -------------------------------------------------------
    try:
        settings = load_settings(args.config)
        if args.client_config:
            settings.client = ClientConfig.from_json_file(args.client_config)
    except ValidationError as exc:
        problems = "\n".join(
            f"  • {e['loc'][-1] if e['loc'] else '?'}: {e['msg']}"
            for e in exc.errors()
        )
        print(
            f"\n❌  Config validation failed:\n\n{problems}\n\n"
            f"    Fix config/config.yaml or your .env file and restart.\n",
            file=sys.stderr,
        )
        sys.exit(1)
    except (OSError, ValueError, TypeError) as exc:
        print(
            f"\n❌  Failed to load config: {type(exc).__name__}: {exc}\n",
            file=sys.stderr,
        )
        sys.exit(1)

    # -- Cross-field validation -----------------------------------------------
    try:
        settings.validate_all()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)

    # -- Logging --------------------------------------------------------------
    # The relay may log to the console; the terminal never does, since its
    # stdout carries the remote shell.
    log_level = args.log_level or settings.log_level
    setup_logging(
        level=log_level,
        log_dir=settings.log_dir,
        json_format=settings.log_json_format,
        console_output=settings.log_console_output and args.interface == "relay",
        max_bytes=settings.logging.max_file_size_mb * 1024 * 1024,
        backup_count=settings.logging.backup_count,
    )

    log = get_logger("shellrelay.main")
    return settings, log


def _form_from_args(args: argparse.Namespace) -> dict:
    form = {
        "host": args.host,
        "port": args.port,
        "username": args.username,
        "relay_username": args.relay_username,
        "endpoint": args.endpoint,
        "auth_endpoint": args.auth_endpoint,
    }
    if args.key_file:
        form["private_key"] = Path(args.key_file).expanduser().read_text(encoding="utf-8")
    return {k: v for k, v in form.items() if v is not None}


def _hash_password() -> int:
    from shellrelay.relay.credentials import hash_secret

    password = getpass.getpass("Password: ")
    if not password or password != getpass.getpass("Repeat: "):
        print("❌  Passwords are empty or do not match.", file=sys.stderr)
        return 1
    print(hash_secret(password))
    return 0


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    # ── Subcommands: no full bootstrap needed ─────────────────────────────────
    if args.subcommand == "hash-password":
        return _hash_password()

    settings, log = bootstrap(args)
    log.info("shellrelay.starting", interface=args.interface)

    # ── Validate required values for chosen interface ─────────────────────────
    missing = settings.validate_required_for_interface(args.interface)
    if missing:
        log.error("shellrelay.startup_failed", reason="Missing required config", missing=missing)
        print(
            f"\n❌  Missing required configuration: {', '.join(missing)}\n"
            f"    Add at least one relay user to config/config.yaml.\n",
            file=sys.stderr,
        )
        return 1

    # ── Launch interface ───────────────────────────────────────────────────────
    if args.interface == "relay":
        from shellrelay.interfaces.relay_service import run_relay
        return await run_relay(settings, log)

    try:
        form = _form_from_args(args)
    except OSError as exc:
        print(f"\n❌  Cannot read key file: {exc}\n", file=sys.stderr)
        return 1
    from shellrelay.interfaces.terminal_cli import run_terminal
    return await run_terminal(settings, log, form)


def run() -> None:
    """Console-script entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
