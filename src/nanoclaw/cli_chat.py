"""CLI chat mode — an interactive REPL bound to one registered folder.

Each line typed becomes one agent turn through the same SessionManager the
host uses, so snapshots, the session token and the mailbox behave exactly
as they do for a chat message. Log output goes to ``logs/cli-chat.log`` to
keep the terminal for the conversation.

Ctrl+C or ``exit`` cancels the running turn (close sentinel, then a forced
stop of the container) and leaves.
"""

from __future__ import annotations

import asyncio
import signal
import sys
from datetime import UTC, datetime

from nanoclaw.config import get_settings
from nanoclaw.db import close_database, get_all_registered_groups, get_all_sessions, init_database
from nanoclaw.logger import add_file_handler, logger
from nanoclaw.router import strip_internal_tags
from nanoclaw.runtime import get_runtime
from nanoclaw.session_manager import InvocationActiveError, SessionManager
from nanoclaw.types import ContainerInput, RegisteredGroup

_QUIT_WORDS = {"exit", "quit"}


def cli_prompt(text: str, now: datetime | None = None) -> str:
    """Wrap a typed line the way chat messages reach the agent."""
    ts = (now or datetime.now(UTC)).isoformat()
    return f'<message from="CLI User" timestamp="{ts}">\n{text}\n</message>'


def find_group_by_folder(
    groups: dict[str, RegisteredGroup], folder: str
) -> tuple[str, RegisteredGroup] | None:
    for jid, group in groups.items():
        if group.folder == folder:
            return jid, group
    return None


def _banner(group: RegisteredGroup) -> str:
    return "\n".join(
        [
            "",
            "╔═══════════════════════════════════════╗",
            "║  NanoClaw CLI Chat                    ║",
            f"║  Group: {group.name[:29].ljust(29)} ║",
            '║  Type "exit" or Ctrl+C to quit        ║',
            "╚═══════════════════════════════════════╝",
            "",
        ]
    )


async def _stdin_reader() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader


async def _wait_or_stop(aw: asyncio.Future, stop: asyncio.Event) -> bool:
    """Wait for *aw* unless *stop* fires first. Returns True if *aw* finished."""
    stop_task = asyncio.ensure_future(stop.wait())
    try:
        done, _ = await asyncio.wait({aw, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop_task.cancel()
    return aw in done


async def run_chat(group_folder: str | None = None) -> int:
    """Run the REPL. Returns a process exit code."""
    s = get_settings()
    folder = group_folder or s.groups.main_folder
    add_file_handler(s.project_root / "logs" / "cli-chat.log", console=False)

    get_runtime().ensure_running()
    await init_database()
    try:
        sessions = await get_all_sessions()
        groups = await get_all_registered_groups()

        entry = find_group_by_folder(groups, folder)
        if entry is None:
            print(f'Error: No registered group with folder "{folder}".', file=sys.stderr)
            available = ", ".join(g.folder for g in groups.values()) or "(none)"
            print(f"Available groups: {available}", file=sys.stderr)
            return 1
        chat_jid, group = entry
        return await _repl(group, chat_jid, SessionManager(sessions=sessions))
    finally:
        await close_database()


async def _repl(group: RegisteredGroup, chat_jid: str, manager: SessionManager) -> int:
    s = get_settings()
    name = s.agent.name
    is_main = group.folder == s.groups.main_folder

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()

    def on_signal() -> None:
        stop.set()
        asyncio.ensure_future(manager.cancel(group.folder))

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, on_signal)

    async def on_incremental(text: str) -> None:
        print(f"\n{name}: {text}", flush=True)

    print(_banner(group))
    reader = await _stdin_reader()
    try:
        while not stop.is_set():
            print("You: ", end="", flush=True)
            read = asyncio.ensure_future(reader.readline())
            if not await _wait_or_stop(read, stop):
                read.cancel()
                break
            raw = read.result()
            if not raw:
                break
            line = raw.decode(errors="replace").strip()
            if not line:
                continue
            if line in _QUIT_WORDS:
                break

            input_data = ContainerInput(
                prompt=cli_prompt(line),
                group_folder=group.folder,
                chat_jid=chat_jid,
                is_main=is_main,
                session_id=manager.sessions.get(group.folder),
            )
            try:
                output = await manager.run_invocation(
                    group,
                    input_data,
                    lambda _proc, container: logger.debug("CLI turn started", container=container),
                    on_incremental,
                )
            except InvocationActiveError:
                print("\n[Busy: this folder has a turn running elsewhere]", file=sys.stderr)
                continue
            if output.status == "error":
                if output.error != "cancelled":
                    print(f"\n[Error: {output.error or 'Unknown error'}]", file=sys.stderr)
            elif output.result:
                text = strip_internal_tags(output.result)
                if text:
                    print(f"\n{name}: {text}")
            print()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await manager.shutdown()
    return 0
