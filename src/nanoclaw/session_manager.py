"""Agent session manager — one container invocation per folder at a time.

``run_invocation`` is the only way a turn reaches a container. It writes
the conversation snapshot, launches the sandbox, forwards interim mailbox
envelopes while the agent runs, persists the returned session token before
anything else, and drains the mailbox one last time so every interim
message precedes the final result.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from nanoclaw import db
from nanoclaw.container_runner import (
    Sandbox,
    run_container_agent,
    write_groups_snapshot,
    write_tasks_snapshot,
)
from nanoclaw.ipc import FolderLockedError, IpcMailbox, acquire_folder_lock
from nanoclaw.logger import logger
from nanoclaw.types import (
    ContainerInput,
    ContainerOutput,
    RegisteredGroup,
    ScheduledTask,
    is_group_jid,
)

OnLaunch = Callable[[asyncio.subprocess.Process, str], Any]
OnIncremental = Callable[[str], Awaitable[None]]


class InvocationActiveError(RuntimeError):
    """An invocation is already running for this folder."""

    def __init__(self, folder: str) -> None:
        super().__init__(f"An agent invocation is already active for folder {folder!r}")
        self.folder = folder


class SessionStore(Protocol):
    """Persistence the session manager reads and writes."""

    async def set_session(self, group_folder: str, session_id: str) -> None: ...

    async def get_all_tasks(self) -> list[ScheduledTask]: ...

    async def get_all_chats(self) -> list[dict[str, str]]: ...

    async def get_all_registered_groups(self) -> dict[str, RegisteredGroup]: ...


class _DbSessionStore:
    """SessionStore backed by the module-level aiosqlite connection."""

    async def set_session(self, group_folder: str, session_id: str) -> None:
        await db.set_session(group_folder, session_id)

    async def get_all_tasks(self) -> list[ScheduledTask]:
        return await db.get_all_tasks()

    async def get_all_chats(self) -> list[dict[str, str]]:
        return await db.get_all_chats()

    async def get_all_registered_groups(self) -> dict[str, RegisteredGroup]:
        return await db.get_all_registered_groups()


class SessionManager:
    def __init__(
        self,
        store: SessionStore | None = None,
        sessions: dict[str, str] | None = None,
    ) -> None:
        self._store: SessionStore = store or _DbSessionStore()
        # folder -> latest session token; shared with the app when given
        self.sessions: dict[str, str] = sessions if sessions is not None else {}
        self._active: set[str] = set()
        self._sandboxes: dict[str, Sandbox] = {}

    def is_active(self, folder: str) -> bool:
        return folder in self._active

    async def _write_snapshots(self, folder: str, is_main: bool) -> None:
        tasks = await self._store.get_all_tasks()
        write_tasks_snapshot(folder, is_main, [t.to_snapshot_dict() for t in tasks])

        registered = await self._store.get_all_registered_groups()
        chats = await self._store.get_all_chats()
        available = [
            {"jid": c["jid"], "name": c["name"], "lastActivity": c["last_message_time"]}
            for c in chats
            if is_group_jid(c["jid"])
        ]
        write_groups_snapshot(folder, is_main, available, set(registered.keys()))

    async def run_invocation(
        self,
        group: RegisteredGroup,
        input_data: ContainerInput,
        on_launch: OnLaunch,
        on_incremental: OnIncremental,
    ) -> ContainerOutput:
        """Run one agent turn for ``input_data.group_folder``.

        Raises InvocationActiveError if the folder already has a turn in
        flight, in this process or in another one holding the folder lock.
        Every other failure comes back as ``status="error"``.
        """
        folder = input_data.group_folder
        if folder in self._active:
            raise InvocationActiveError(folder)
        try:
            lock = acquire_folder_lock(folder)
        except FolderLockedError as exc:
            raise InvocationActiveError(folder) from exc
        self._active.add(folder)

        mailbox = IpcMailbox(folder, on_incremental)
        try:
            await self._write_snapshots(folder, input_data.is_main)
            mailbox.start()

            def on_sandbox(sandbox: Sandbox) -> None:
                self._sandboxes[folder] = sandbox

            output = await run_container_agent(
                group,
                input_data,
                on_launch,
                on_sandbox=on_sandbox,
                interim_count=lambda: mailbox.delivered,
            )

            if output.new_session_id:
                await self._store.set_session(folder, output.new_session_id)
                self.sessions[folder] = output.new_session_id

            await mailbox.stop()
            await mailbox.poll_once()
            return output
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "Agent invocation failed",
                group=group.name,
                folder=folder,
                error_type=type(exc).__name__,
                err=str(exc),
            )
            return ContainerOutput(status="error", result=None, error=_short_reason(exc))
        finally:
            await mailbox.stop()
            self._sandboxes.pop(folder, None)
            self._active.discard(folder)
            lock.close()

    async def cancel(self, folder: str) -> bool:
        """Cancel the folder's running sandbox. Returns False if none is running."""
        sandbox = self._sandboxes.get(folder)
        if sandbox is None:
            return False
        logger.info("Cancelling agent invocation", folder=folder, container=sandbox.name)
        await sandbox.cancel()
        return True

    async def shutdown(self) -> None:
        """Cancel every running sandbox."""
        folders = list(self._sandboxes)
        if folders:
            logger.info("Session manager shutting down", active=len(folders))
        await asyncio.gather(*(self.cancel(f) for f in folders), return_exceptions=True)


def _short_reason(exc: BaseException) -> str:
    text = str(exc) or type(exc).__name__
    return text if len(text) <= 200 else text[:197] + "..."

