"""
Operational CLI for OAuth integrations.

Usage:
    oauth-cli <command> [options]

Commands:
    setup [--provider NAME]          Prompt for client credentials and write them to .env
    validate                         Check .env has the encryption key and credential pairs
    status [--user U]                Show integrations of one user or of every user
    inspect PROVIDER --user U        Show token metadata (never the token itself)
    refresh PROVIDER --user U        Force a token refresh
    validate-all --user U            Check every active integration of a user
    disconnect PROVIDER --user U     Revoke at the provider and deactivate locally
    simulate-failure PROVIDER --user U
                                     Corrupt the refresh token, force a refresh and
                                     confirm reauthorization is reported, then restore

Exit codes:
    0  success
    1  operational failure or validation issues
    2  usage error (unknown command, provider or missing argument)
"""

import argparse
import asyncio
import getpass
import json
import os
import shutil
import sys
from collections import OrderedDict
from pathlib import Path
from typing import Any

from oauth_core.core.config import settings
from oauth_core.core.exceptions import (
    ConfigurationError,
    IntegrationNotFoundError,
    OAuthCoreError,
    ReauthorizationRequired,
    TransientFailure,
    UnknownProviderError,
)
from oauth_core.core.logging import configure_logging
from oauth_core.crud.integration import get_user_integration, set_refresh_token_ciphertext
from oauth_core.services.providers import BUILTIN_PROVIDERS
from oauth_core.services.token_refresh import ValidationStatus
from oauth_core.services.token_service import TokenService

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

DEFAULT_ENV_FILE = Path(".env")

# Refresh token stored by simulate-failure; no provider will accept it
SIMULATED_REFRESH_TOKEN = "simulated-invalid-refresh-token"


def log_info(msg: str) -> None:
    print(f"\033[0;32m[INFO]\033[0m {msg}")


def log_warn(msg: str) -> None:
    print(f"\033[1;33m[WARN]\033[0m {msg}")


def log_error(msg: str) -> None:
    print(f"\033[0;31m[ERROR]\033[0m {msg}", file=sys.stderr)


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


# =============================================================================
# .env read/write helpers
# =============================================================================


def read_env_lines(env_path: Path) -> list[str]:
    """Read the .env file as raw lines, or an empty list if it does not exist."""
    if not env_path.exists():
        return []
    return env_path.read_text(encoding="utf-8").splitlines()


def _parse_line(line: str) -> tuple[str, str] | None:
    stripped = line.strip()
    if not stripped or stripped.startswith("#") or "=" not in stripped:
        return None
    key, _, value = stripped.partition("=")
    key = key.strip()
    if key.startswith("export "):
        key = key[len("export "):].strip()
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        value = value[1:-1]
    return key, value


def get_env_map(env_path: Path) -> dict[str, str]:
    """Key/value pairs of the .env file; later duplicates win."""
    env_map: dict[str, str] = {}
    for line in read_env_lines(env_path):
        parsed = _parse_line(line)
        if parsed is not None:
            env_map[parsed[0]] = parsed[1]
    return env_map


def write_env_file(env_path: Path, updates: dict[str, str]) -> None:
    """
    Set keys in the .env file, preserving comments, blank lines and order.

    Existing keys are replaced in place; new keys are appended. The file is
    written to ``.env.tmp``, the previous file is copied to ``.env.bak`` and
    the temp file is then renamed over the original.
    """
    pending = OrderedDict(updates)
    lines: list[str] = []
    for line in read_env_lines(env_path):
        parsed = _parse_line(line)
        if parsed is not None and parsed[0] in pending:
            lines.append(f"{parsed[0]}={pending.pop(parsed[0])}")
        else:
            lines.append(line)
    for key, value in pending.items():
        lines.append(f"{key}={value}")

    tmp_path = env_path.with_name(env_path.name + ".tmp")
    bak_path = env_path.with_name(env_path.name + ".bak")

    tmp_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    if env_path.exists():
        shutil.copy2(env_path, bak_path)
    os.replace(tmp_path, env_path)


def _credential_sets() -> "OrderedDict[str, list[str]]":
    """Settings prefix -> providers sharing those credentials."""
    sets: OrderedDict[str, list[str]] = OrderedDict()
    for provider in BUILTIN_PROVIDERS:
        sets.setdefault(provider.credentials, []).append(provider.name)
    return sets


def _callback_url(env_map: dict[str, str]) -> str:
    backend_url = env_map.get("BACKEND_URL") or settings.BACKEND_URL
    return f"{backend_url.rstrip('/')}{settings.API_V1_STR}/integrations/oauth/callback"


# =============================================================================
# Configuration commands
# =============================================================================


def cmd_validate(args: argparse.Namespace) -> int:
    env_path: Path = args.env_file
    if not env_path.exists():
        log_error(f"{env_path} not found. Run 'oauth-cli setup' to create it.")
        return EXIT_FAILURE

    env_map = get_env_map(env_path)
    issues = 0

    key = env_map.get("TOKEN_ENCRYPTION_KEY")
    if key is None:
        log_error("TOKEN_ENCRYPTION_KEY: missing (required to encrypt stored tokens)")
        issues += 1
    elif not key:
        log_error("TOKEN_ENCRYPTION_KEY: blank")
        issues += 1
    else:
        log_info("TOKEN_ENCRYPTION_KEY: present")

    callback_url = _callback_url(env_map)
    configured = 0
    for prefix, providers in _credential_sets().items():
        client_id = env_map.get(f"{prefix}_CLIENT_ID", "")
        client_secret = env_map.get(f"{prefix}_CLIENT_SECRET", "")
        label = f"{prefix} ({', '.join(providers)})"

        if not client_id and not client_secret:
            print(f"  {label}: not configured")
            continue
        if not client_id or not client_secret:
            missing = f"{prefix}_CLIENT_ID" if not client_id else f"{prefix}_CLIENT_SECRET"
            log_error(f"{label}: {missing} is missing or blank")
            issues += 1
            continue

        configured += 1
        log_info(f"{label}: configured (client id {client_id[:6]}...)")
        print(f"    callback URL: {callback_url}")

    if configured == 0:
        log_warn("No provider credentials configured")

    if issues:
        log_error(f"{issues} problem(s) found in {env_path}")
        return EXIT_FAILURE
    log_info(f"{env_path} looks good")
    return EXIT_OK


def cmd_setup(args: argparse.Namespace) -> int:
    env_path: Path = args.env_file
    sets = _credential_sets()

    if args.provider:
        prefix = next(
            (p for p, providers in sets.items() if args.provider in providers or args.provider.upper() == p),
            None,
        )
        if prefix is None:
            log_error(f"Unknown provider: {args.provider}")
            return EXIT_USAGE
        prefixes = [prefix]
    else:
        prefixes = list(sets)

    env_map = get_env_map(env_path)
    updates: dict[str, str] = {}

    if not env_map.get("TOKEN_ENCRYPTION_KEY"):
        from cryptography.fernet import Fernet

        updates["TOKEN_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
        log_info("Generated TOKEN_ENCRYPTION_KEY")

    callback_url = _callback_url(env_map)
    for prefix in prefixes:
        print()
        print(f"{prefix} ({', '.join(sets[prefix])})")
        print("  1. Create an OAuth app in the provider's developer console")
        print(f"  2. Set the callback URL to: {callback_url}")

        existing_id = env_map.get(f"{prefix}_CLIENT_ID")
        if existing_id:
            print(f"  {prefix}_CLIENT_ID = {existing_id[:6]}... (press Enter to keep)")

        client_id = input(f"  {prefix}_CLIENT_ID: ").strip()
        if not client_id:
            if not existing_id:
                log_warn(f"Skipping {prefix}")
            continue
        client_secret = getpass.getpass(f"  {prefix}_CLIENT_SECRET: ").strip()
        if not client_secret:
            log_warn(f"No secret given, skipping {prefix}")
            continue

        updates[f"{prefix}_CLIENT_ID"] = client_id
        updates[f"{prefix}_CLIENT_SECRET"] = client_secret

    if not updates:
        log_info("Nothing to write")
        return EXIT_OK

    write_env_file(env_path, updates)
    log_info(f"Saved {len(updates)} setting(s) to {env_path}")
    return EXIT_OK


# =============================================================================
# Integration commands
# =============================================================================


def _build_service() -> TokenService:
    from oauth_core.core.db import init_db

    init_db()
    return TokenService.from_settings(settings)


def _format_seconds(seconds: int | None) -> str:
    if seconds is None:
        return "never"
    prefix = ""
    if seconds < 0:
        prefix, seconds = "-", -seconds
    hours, remainder = divmod(seconds, 3600)
    minutes = remainder // 60
    if hours:
        return f"{prefix}{hours}h{minutes:02d}m"
    return f"{prefix}{minutes}m"


async def cmd_status(service: TokenService, args: argparse.Namespace) -> int:
    integrations = service.list_integrations(args.user, include_inactive=True)
    rows = [service.inspect(i.user_id, i.service_name) for i in integrations]

    if args.json:
        _print_json(rows)
        return EXIT_OK

    if not rows:
        log_info("No integrations found")
        return EXIT_OK

    header = f"{'USER':<20} {'PROVIDER':<12} {'ACTIVE':<7} {'AGE':<9} {'EXPIRES':<9} {'REFRESH':<8} SCOPES"
    print(header)
    print("-" * len(header))
    for row in rows:
        print(
            f"{row['user_id'][:20]:<20} {row['provider']:<12} "
            f"{'yes' if row['is_active'] else 'no':<7} "
            f"{_format_seconds(row['token_age_seconds']):<9} "
            f"{_format_seconds(row['expires_in_seconds']):<9} "
            f"{'yes' if row['has_refresh_token'] else 'no':<8} "
            f"{row['scopes'] or ''}"
        )
    return EXIT_OK


async def cmd_inspect(service: TokenService, args: argparse.Namespace) -> int:
    info = service.inspect(args.user, args.provider)
    if args.json:
        _print_json(info)
    else:
        for key, value in info.items():
            print(f"  {key:<20} {value}")
    return EXIT_OK


async def cmd_refresh(service: TokenService, args: argparse.Namespace) -> int:
    token = await service.force_refresh(args.user, args.provider)
    info = service.inspect(args.user, args.provider)
    if args.json:
        _print_json({"refreshed": True, "token_prefix": token[:8], **info})
    else:
        log_info(f"Refreshed {args.provider} for {args.user}")
        print(f"  token prefix: {token[:8]}...")
        print(f"  expires in:   {_format_seconds(info['expires_in_seconds'])}")
    return EXIT_OK


async def cmd_validate_all(service: TokenService, args: argparse.Namespace) -> int:
    results = await service.validate_all(args.user)
    if args.json:
        _print_json([r.__dict__ for r in results])
    elif not results:
        log_info(f"No active integrations for {args.user}")
    else:
        for result in results:
            if result.status == ValidationStatus.VALID:
                log_info(f"{result.provider}: valid")
            elif result.status == ValidationStatus.REAUTHORIZATION_REQUIRED:
                log_error(f"{result.provider}: reconnect required ({result.message})")
            else:
                log_warn(f"{result.provider}: temporarily unavailable ({result.message})")

    healthy = all(r.status == ValidationStatus.VALID for r in results)
    return EXIT_OK if healthy else EXIT_FAILURE


async def cmd_disconnect(service: TokenService, args: argparse.Namespace) -> int:
    result = await service.disconnect(args.user, args.provider)
    revocation = result.revocation
    if args.json:
        _print_json(
            {
                "provider": result.provider,
                "deactivated": result.deactivated,
                "revocation_status": revocation.status.value,
                "revocation_detail": revocation.detail,
            }
        )
        return EXIT_OK

    log_info(f"Disconnected {args.provider} for {args.user}")
    if revocation.revoked:
        print("  revocation: token revoked at provider")
    else:
        print(f"  revocation: {revocation.status.value} ({revocation.detail})")
    return EXIT_OK


async def cmd_simulate_failure(service: TokenService, args: argparse.Namespace) -> int:
    log_warn("Temporarily replacing the stored refresh token with an invalid one")

    with service.session_factory() as session:
        integration = get_user_integration(
            session=session, user_id=args.user, service_name=args.provider
        )
        if integration is None:
            raise IntegrationNotFoundError(args.user, args.provider)
        original = integration.refresh_token_encrypted
        set_refresh_token_ciphertext(
            session=session,
            integration=integration,
            ciphertext=service.vault.encrypt(SIMULATED_REFRESH_TOKEN),
        )

    try:
        await service.force_refresh(args.user, args.provider)
    except ReauthorizationRequired as e:
        log_info(f"Reauthorization correctly reported: {e.user_message}")
        return EXIT_OK
    except TransientFailure as e:
        log_error(f"Expected reauthorization, got transient failure: {e}")
        return EXIT_FAILURE
    else:
        log_error("Refresh with an invalid refresh token unexpectedly succeeded")
        return EXIT_FAILURE
    finally:
        with service.session_factory() as session:
            integration = get_user_integration(
                session=session,
                user_id=args.user,
                service_name=args.provider,
                include_inactive=True,
            )
            if integration is not None:
                set_refresh_token_ciphertext(
                    session=session, integration=integration, ciphertext=original
                )
        log_info("Original refresh token restored")


SERVICE_COMMANDS = {
    "status": cmd_status,
    "inspect": cmd_inspect,
    "refresh": cmd_refresh,
    "validate-all": cmd_validate_all,
    "disconnect": cmd_disconnect,
    "simulate-failure": cmd_simulate_failure,
}


async def _run_service_command(args: argparse.Namespace) -> int:
    service = _build_service()
    try:
        return await SERVICE_COMMANDS[args.command](service, args)
    finally:
        await service.aclose()


# =============================================================================
# Entry point
# =============================================================================


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="oauth-cli",
        description="Inspect and operate OAuth integrations.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_env_file(subparser: argparse.ArgumentParser) -> None:
        subparser.add_argument(
            "--env-file",
            default=DEFAULT_ENV_FILE,
            type=Path,
            help="Path to the environment file (default: .env).",
        )

    def add_json(subparser: argparse.ArgumentParser) -> None:
        subparser.add_argument("--json", action="store_true", help="Print JSON output.")

    setup_parser = subparsers.add_parser("setup", help="Write provider credentials to .env.")
    setup_parser.add_argument("--provider", help="Only set up this provider (e.g. github, jira).")
    add_env_file(setup_parser)

    validate_parser = subparsers.add_parser("validate", help="Check the .env file.")
    add_env_file(validate_parser)

    status_parser = subparsers.add_parser("status", help="List integrations.")
    status_parser.add_argument("--user", help="Only show this user's integrations.")
    add_json(status_parser)

    for name, help_text in (
        ("inspect", "Show token metadata for one integration."),
        ("refresh", "Force a token refresh."),
        ("disconnect", "Revoke and deactivate an integration."),
        ("simulate-failure", "Check that a revoked refresh token is reported correctly."),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("provider", help="Provider identifier (e.g. github).")
        sub.add_argument("--user", required=True, help="User ID owning the integration.")
        add_json(sub)

    validate_all_parser = subparsers.add_parser(
        "validate-all", help="Check every active integration of a user."
    )
    validate_all_parser.add_argument("--user", required=True, help="User ID.")
    add_json(validate_all_parser)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    configure_logging("DEBUG" if args.verbose else "WARNING")

    try:
        if args.command == "validate":
            return cmd_validate(args)
        if args.command == "setup":
            return cmd_setup(args)
        return asyncio.run(_run_service_command(args))
    except UnknownProviderError as e:
        log_error(str(e))
        return EXIT_USAGE
    except ConfigurationError as e:
        log_error(f"Configuration error: {e}")
        return EXIT_FAILURE
    except OAuthCoreError as e:
        log_error(f"{type(e).__name__}: {e}")
        print(f"  {e.user_message}")
        return EXIT_FAILURE
    except KeyboardInterrupt:
        log_warn("Interrupted")
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
