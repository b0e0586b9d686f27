"""CLI: serverdeck login, logout, status, servers, watch, logs, exec, config validate."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime

from ..config import load_config, validate_config
from ..core.log_tail import entry_filter
from ..dashboard import DashboardSession
from ..types import EntryKind, LogEntry, LogLevel, ServerDeckError, ServerEntity


def _auth_lost(login_url: str) -> None:
    print(f"Session expired. Sign in again: serverdeck login ({login_url})", file=sys.stderr)


def _open_dashboard(args) -> DashboardSession:
    return DashboardSession(config_path=args.config, on_auth_lost=_auth_lost)


def _require_login(dash: DashboardSession) -> None:
    if not dash.session.is_authenticated:
        print("Not signed in. Run: serverdeck login", file=sys.stderr)
        sys.exit(1)


def _format_server(s: ServerEntity) -> str:
    players = ""
    if s.player_count is not None:
        players = f"{s.player_count}/{s.max_players if s.max_players is not None else '?'}"
    return f"{s.name:<24} {s.phase or '-':<12} {s.version or '-':<10} {players:>7} {s.address or ''}"


def _format_entry(entry: LogEntry) -> str:
    if entry.kind is EntryKind.COMMAND:
        return f"> {entry.text}"
    if entry.kind is EntryKind.ERROR:
        return f"! {entry.text}"
    return entry.text


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        pass
    except ServerDeckError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def cmd_login(args):
    """Store the token pair issued by the sign-in callback."""
    dash = _open_dashboard(args)
    access_token = args.access_token
    refresh_token = args.refresh_token
    if not access_token or not refresh_token:
        print(f"Sign in at {dash.config.base_url.rstrip('/')}{dash.config.session.login_url}")
        print("then paste the tokens from the callback URL.")
        access_token = access_token or input("Access token: ").strip()
        refresh_token = refresh_token or input("Refresh token: ").strip()
    if not access_token or not refresh_token:
        print("Both tokens are required.", file=sys.stderr)
        sys.exit(1)

    credential = dash.session.login(access_token, refresh_token, args.expires_in)
    expires = datetime.fromtimestamp(credential.expires_at).strftime("%Y-%m-%d %H:%M")
    print(f"Signed in. Access token valid until {expires}.")
    _run(dash.close())


def cmd_logout(args):
    async def go():
        dash = _open_dashboard(args)
        try:
            await dash.session.logout()
        finally:
            await dash.close()
        print("Signed out.")

    _run(go())


def cmd_status(args):
    """Show endpoint, session state, and the signed-in user."""
    async def go():
        dash = _open_dashboard(args)
        try:
            config = dash.config
            credential = dash.session.credential
            print(f"API:      {config.api_base}")
            print(f"Realtime: {config.ws_url}")
            print(f"Storage:  {config.storage.backend} ({config.storage.root})")
            if credential is None:
                print("Session:  signed out")
                return
            expires = datetime.fromtimestamp(credential.expires_at).strftime("%Y-%m-%d %H:%M:%S")
            print(f"Session:  signed in (token expires {expires})")
            user = await dash.api.current_user()
            user = user.get("user", user) if isinstance(user, dict) else user
            if isinstance(user, dict):
                print(f"User:     {user.get('name') or ''} <{user.get('email') or '?'}>")
        finally:
            await dash.close()

    _run(go())


def cmd_servers(args):
    """List servers once via REST."""
    async def go():
        dash = _open_dashboard(args)
        try:
            _require_login(dash)
            servers = await dash.refresh_servers()
        finally:
            await dash.close()
        if not servers:
            print("No servers yet.")
            return
        print(f"{'Name':<24} {'Phase':<12} {'Version':<10} {'Players':>7} Address")
        print("-" * 72)
        for s in sorted(servers, key=lambda s: s.name):
            print(_format_server(s))

    _run(go())


def cmd_watch(args):
    """Follow the realtime channel and print the collection as it changes."""
    async def go():
        dash = _open_dashboard(args)

        def on_event(event):
            label = event.type if event is not None else "local"
            stamp = datetime.now().strftime("%H:%M:%S")
            print(f"[{stamp}] {label}: {len(dash.collection)} servers")
            for s in sorted(dash.collection.snapshot(), key=lambda s: s.name):
                print("  " + _format_server(s))

        dash.collection.subscribe(on_event)
        dash.channel.on_state_change(lambda state: print(f"-- connection {state.value}"))
        try:
            _require_login(dash)
            await dash.open()
            await asyncio.Event().wait()
        finally:
            await dash.close()

    _run(go())


def cmd_logs(args):
    """Print the recent log window, optionally following new lines."""
    wanted = entry_filter(args.level, args.search)

    async def go():
        dash = _open_dashboard(args)
        try:
            _require_login(dash)
            view = await dash.watch_server(args.name)
            buffer = view.log_tail.buffer
            printed = 0

            def flush():
                nonlocal printed
                total = buffer.evicted + len(buffer)
                fresh = buffer.entries()[-(total - printed):] if total > printed else []
                printed = total
                for entry in fresh:
                    if wanted(entry):
                        print(_format_entry(entry))

            flush()
            if not args.follow:
                return
            view.log_tail.on_change(flush)
            view.set_console_visible(True)
            await asyncio.Event().wait()
        finally:
            await dash.close()

    _run(go())


def cmd_exec(args):
    """Run one console command on a server."""
    async def go():
        dash = _open_dashboard(args)
        try:
            _require_login(dash)
            result = await dash.api.execute_command(args.name, args.command)
        finally:
            await dash.close()
        print(result or "Command executed successfully")

    _run(go())


def cmd_config_validate(args):
    """Validate config file."""
    try:
        config = load_config(args.config)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    errors = validate_config(config)
    if errors:
        print("Config validation errors:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)
    else:
        print("Config is valid.")
        print(f"  API: {config.api_base}")
        print(f"  Realtime: {config.ws_url}")
        print(f"  Log tail: {config.log_tail.bootstrap_lines}/{config.log_tail.poll_lines} lines, "
              f"every {config.log_tail.poll_interval:g}s")
        print(f"  Storage: {config.storage.backend}")


def main():
    parser = argparse.ArgumentParser(
        prog="serverdeck",
        description="Manage game servers from the terminal",
    )
    parser.add_argument("--config", "-c", help="Path to config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command")

    # login
    login_parser = subparsers.add_parser("login", help="Store tokens from the sign-in callback")
    login_parser.add_argument("--access-token", help="Access token")
    login_parser.add_argument("--refresh-token", help="Refresh token")
    login_parser.add_argument(
        "--expires-in", type=float, default=3600.0, help="Access token lifetime in seconds",
    )

    # logout
    subparsers.add_parser("logout", help="Sign out and forget stored tokens")

    # status
    subparsers.add_parser("status", help="Show endpoint and session state")

    # servers
    subparsers.add_parser("servers", help="List servers")

    # watch
    subparsers.add_parser("watch", help="Follow live server updates")

    # logs
    logs_parser = subparsers.add_parser("logs", help="Show a server's console log")
    logs_parser.add_argument("name", help="Server name")
    logs_parser.add_argument("--follow", "-f", action="store_true", help="Keep printing new lines")
    logs_parser.add_argument(
        "--level", choices=[lvl.value for lvl in LogLevel], help="Only lines of this level",
    )
    logs_parser.add_argument("--search", "-s", help="Only lines containing this text")

    # exec
    exec_parser = subparsers.add_parser("exec", help="Run a console command")
    exec_parser.add_argument("name", help="Server name")
    exec_parser.add_argument("command", help="Command to run")

    # config validate
    config_parser = subparsers.add_parser("config", help="Config operations")
    config_sub = config_parser.add_subparsers(dest="config_command")
    config_sub.add_parser("validate", help="Validate config file")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "login":
        cmd_login(args)
    elif args.command == "logout":
        cmd_logout(args)
    elif args.command == "status":
        cmd_status(args)
    elif args.command == "servers":
        cmd_servers(args)
    elif args.command == "watch":
        cmd_watch(args)
    elif args.command == "logs":
        cmd_logs(args)
    elif args.command == "exec":
        cmd_exec(args)
    elif args.command == "config":
        if args.config_command == "validate":
            cmd_config_validate(args)
        else:
            print("Usage: serverdeck config validate")
            sys.exit(1)


if __name__ == "__main__":
    main()
