#!/usr/bin/env python3
"""
KeyRelay -- App management CLI and server launcher.

Apps are service accounts; they are never self-registered over HTTP. This
CLI writes straight to the credential store the server reads (DATABASE_URL,
or the default SQLite file), so a running server sees changes within
CREDENTIAL_CACHE_TTL seconds.

Usage:
  python main.py register --name MyWebApp --openai --anthropic --domains myapp.com
  python main.py register --name DevApp --openai --env development --ips 192.168.1.100 --expires 30
  python main.py register --name MobileApp --anthropic --rate-limit 100/5
  python main.py list
  python main.py show --name MyWebApp
  python main.py revoke --name OldApp
  python main.py revoke --id 6f1c...
  python main.py rotate --id 6f1c...
  python main.py serve --port 3000

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the credential store (default: SQLite file).
"""

import argparse
from datetime import datetime, timedelta, timezone
from typing import Optional

from auth.backend import SqlCredentialBackend
from auth.models import ENVIRONMENTS, App, Permissions, RateLimitPolicy
from auth.store import CredentialStore
from core.config import get_settings
from core.errors import RelayError

_RULE = "═" * 55


def _open_store() -> CredentialStore:
    settings = get_settings()
    backend = SqlCredentialBackend(settings.database_url) if settings.database_url else SqlCredentialBackend()
    return CredentialStore(backend, cache_ttl=0)


def _split_list(value: Optional[str]) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _parse_rate_limit(value: str) -> RateLimitPolicy:
    """Parse "<requests>/<minutes>", e.g. "100/5" for 100 requests per 5 minutes."""
    try:
        requests_str, minutes_str = value.split("/", 1)
        requests, minutes = int(requests_str), int(minutes_str)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected <requests>/<minutes>, got '{value}'") from None
    if requests <= 0 or minutes <= 0:
        raise argparse.ArgumentTypeError("requests and minutes must be positive")
    return RateLimitPolicy(window_ms=minutes * 60 * 1000, max_requests=requests)


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a whole number, got '{value}'") from None
    if number <= 0:
        raise argparse.ArgumentTypeError("must be positive")
    return number


def _mark(flag: bool) -> str:
    return "✓" if flag else "✗"


def _print_app(app: App, *, full_key: bool = False) -> None:
    key = app.api_key if full_key else f"{app.api_key[:20]}..."
    print(f"  {app.name} ({app.environment})")
    print(f"   ID:           {app.id}")
    print(f"   API Key:      {key}")
    print(f"   Permissions:  OpenAI: {_mark(app.permissions.openai)}, Anthropic: {_mark(app.permissions.anthropic)}")
    if app.allowed_ips:
        print(f"   IP Whitelist: {', '.join(app.allowed_ips)}")
    if app.allowed_domains:
        print(f"   Domains:      {', '.join(app.allowed_domains)}")
    minutes = app.rate_limit.window_ms / 60000
    print(f"   Rate Limit:   {app.rate_limit.max_requests} requests per {minutes:g} minute(s)")
    print(f"   Access Count: {app.access_count}")
    print(f"   Last Access:  {app.last_access or 'Never'}")
    if app.expires_at:
        print(f"   Expires:      {app.expires_at}")
        print(f"   Status:       {'EXPIRED' if app.is_expired() else 'Active'}")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_register(store: CredentialStore, args: argparse.Namespace) -> int:
    permissions = Permissions(openai=args.openai, anthropic=args.anthropic)
    if not permissions.openai and not permissions.anthropic:
        print("  [!] At least one service permission required (--openai or --anthropic).")
        return 1

    expires_at = None
    if args.expires:
        expires_at = (datetime.now(timezone.utc) + timedelta(days=args.expires)).isoformat()

    try:
        app = store.register_app(
            args.name,
            permissions,
            allowed_ips=_split_list(args.ips),
            allowed_domains=_split_list(args.domains),
            rate_limit=args.rate_limit,
            environment=args.env,
            expires_at=expires_at,
        )
    except RelayError as e:
        print(f"  [!] {e.message}")
        return 1

    print("App registered successfully.\n")
    print(_RULE)
    _print_app(app, full_key=True)
    print(_RULE)
    print("\n  Save this API key securely -- it is shown only once.")
    print("\nUsage:")
    print("  curl -H 'X-App-Key: <key>' https://<host>/api/v1/app/keys/all\n")
    return 0


def cmd_list(store: CredentialStore, args: argparse.Namespace) -> int:
    apps = store.list_apps()
    if not apps:
        print("No apps registered yet.")
        return 0
    print("\nRegistered Apps:")
    print(_RULE + "\n")
    for app in apps:
        _print_app(app)
        print("")
    return 0


def _find_apps(store: CredentialStore, args: argparse.Namespace) -> list[App]:
    if args.id:
        return [a for a in store.list_apps() if a.id == args.id]
    return [a for a in store.list_apps() if a.name == args.name]


def cmd_show(store: CredentialStore, args: argparse.Namespace) -> int:
    matches = _find_apps(store, args)
    if not matches:
        print(f"  [!] App '{args.id or args.name}' not found.")
        return 1
    for app in matches:
        _print_app(app)
        print("")
    return 0


def cmd_revoke(store: CredentialStore, args: argparse.Namespace) -> int:
    if args.id:
        if not store.revoke_app_by_id(args.id):
            print(f"  [!] App id '{args.id}' not found.")
            return 1
        print(f"App id '{args.id}' has been revoked.")
        return 0

    matches = _find_apps(store, args)
    if not matches:
        print(f"  [!] App '{args.name}' not found.")
        return 1
    if len(matches) > 1:
        print(f"  [!] {len(matches)} apps are named '{args.name}'; all of them will be revoked.")
        print("      Use --id to revoke a single app.")
    removed = store.revoke_app(args.name)
    print(f"App '{args.name}' has been revoked ({removed} removed).")
    return 0


def cmd_rotate(store: CredentialStore, args: argparse.Namespace) -> int:
    matches = _find_apps(store, args)
    if not matches:
        print(f"  [!] App id '{args.id}' not found.")
        return 1
    app = matches[0]
    try:
        store.rotate_api_key(app)
    except RelayError as e:
        print(f"  [!] {e.message}")
        return 1

    print(f"API key for '{app.name}' rotated. The old key no longer works.\n")
    print(_RULE)
    _print_app(app, full_key=True)
    print(_RULE)
    print("\n  Save this API key securely -- it is shown only once.\n")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port)
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keyrelay",
        description="Manage KeyRelay apps and run the API server.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  keyrelay register --name MyWebApp --openai --anthropic --domains myapp.com
  keyrelay register --name DevApp --openai --env development --ips 192.168.1.100 --expires 30
  keyrelay register --name MobileApp --anthropic --rate-limit 100/5
  keyrelay list
  keyrelay revoke --name OldApp
  keyrelay rotate --id 6f1c...
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    register = sub.add_parser("register", help="Register a new app")
    register.add_argument("--name", required=True, help="App name (required)")
    register.add_argument("--openai", action="store_true", help="Grant OpenAI key access")
    register.add_argument("--anthropic", action="store_true", help="Grant Anthropic key access")
    register.add_argument("--ips", metavar="IP1,IP2", help="Comma-separated IP allow-list")
    register.add_argument("--domains", metavar="D1,D2", help="Comma-separated allowed origin domains")
    register.add_argument(
        "--env",
        choices=list(ENVIRONMENTS),
        default="production",
        help="Environment label (default: production)",
    )
    register.add_argument(
        "--rate-limit",
        type=_parse_rate_limit,
        metavar="N/M",
        help="N requests per M minutes (default: 30 per 1)",
    )
    register.add_argument("--expires", type=_positive_int, metavar="DAYS", help="Expire after DAYS days")

    sub.add_parser("list", help="List all registered apps")

    for name, help_text in (("show", "Show one app's details"), ("revoke", "Revoke an app's access")):
        cmd = sub.add_parser(name, help=help_text)
        target = cmd.add_mutually_exclusive_group(required=True)
        target.add_argument("--name", help="App name (every app with this name)")
        target.add_argument("--id", help="App ID (exactly one app)")

    rotate = sub.add_parser("rotate", help="Issue a new API key for one app")
    rotate.add_argument("--id", required=True, help="App ID")

    serve = sub.add_parser("serve", help="Run the API server with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=3000)

    return parser


_COMMANDS = {
    "register": cmd_register,
    "list": cmd_list,
    "show": cmd_show,
    "revoke": cmd_revoke,
    "rotate": cmd_rotate,
}


def main(argv: Optional[list[str]] = None, store: Optional[CredentialStore] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0
    if args.command == "serve":
        return cmd_serve(args)

    own_store = store is None
    store = store or _open_store()
    try:
        return _COMMANDS[args.command](store, args)
    finally:
        if own_store:
            store.close()


if __name__ == "__main__":
    raise SystemExit(main())
