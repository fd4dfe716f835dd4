"""Entry point for `python -m nanoclaw` / `nanoclaw`.

Subcommands:
    nanoclaw [run]          Run the host (default)
    nanoclaw chat           Interactive REPL against a registered folder
    nanoclaw watchdog       One watchdog tick (run it from a timer)
    nanoclaw register ...   Register a chat
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import UTC, datetime


def _run() -> None:
    from nanoclaw.app import NanoclawApp

    app = NanoclawApp()
    asyncio.run(app.run())


def _chat(group: str | None) -> None:
    from nanoclaw.cli_chat import run_chat

    sys.exit(asyncio.run(run_chat(group)))


def _watchdog() -> None:
    from nanoclaw.config import get_settings
    from nanoclaw.liveness import run_watchdog_tick
    from nanoclaw.logger import add_file_handler

    add_file_handler(get_settings().watchdog_log_path, console=sys.stderr.isatty())
    sys.exit(run_watchdog_tick())


async def _register(jid: str, name: str, folder: str, trigger: str | None, requires: bool) -> None:
    from nanoclaw.config import get_settings
    from nanoclaw.db import close_database, init_database, set_registered_group
    from nanoclaw.types import RegisteredGroup

    s = get_settings()
    group = RegisteredGroup(
        name=name,
        folder=folder,
        trigger=trigger or f"@{s.agent.name}",
        added_at=datetime.now(UTC).isoformat(),
        requires_trigger=requires,
    )
    await init_database()
    try:
        await set_registered_group(jid, group)
    finally:
        await close_database()
    (s.groups_dir / folder / "logs").mkdir(parents=True, exist_ok=True)
    print(f"Registered {jid} as {name!r} (folder: {folder})")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="nanoclaw",
        description="Chat bridge to a containerised agent",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Run the host (default)")

    chat = sub.add_parser("chat", help="Interactive chat with the agent")
    chat.add_argument("--group", default=None, help="Registered folder (default: main)")

    sub.add_parser("watchdog", help="Reap stale containers and kill a stalled host")

    register = sub.add_parser("register", help="Register a chat")
    register.add_argument("jid")
    register.add_argument("name")
    register.add_argument("folder")
    register.add_argument("--trigger", default=None, help="Trigger word (default: @<agent name>)")
    register.add_argument(
        "--no-trigger",
        action="store_true",
        help="Respond to every message, not just triggered ones",
    )

    args = parser.parse_args()

    match args.command:
        case "chat":
            _chat(args.group)
        case "watchdog":
            _watchdog()
        case "register":
            try:
                asyncio.run(
                    _register(args.jid, args.name, args.folder, args.trigger, not args.no_trigger)
                )
            except ValueError as exc:
                print(f"Error: {exc}", file=sys.stderr)
                sys.exit(1)
        case _:
            _run()


if __name__ == "__main__":
    main()
