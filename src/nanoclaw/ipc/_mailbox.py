"""Mailbox consumer — delivers a folder's envelopes to a subscriber.

Claim protocol: each ``x.json`` is renamed to ``x.json.processing`` before
it is parsed, and deleted after delivery. A consumer that crashes between
claim and delete leaves the ``.processing`` file behind, and the next pass
delivers it again (at-least-once).

Wake-ups come from a watchdog Observer (inotify on Linux, FSEvents on
macOS); the fixed-interval poll keeps running underneath in case an event
is missed.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from watchdog.events import FileCreatedEvent, FileMovedEvent, FileSystemEventHandler
from watchdog.observers import Observer

from nanoclaw.config import get_settings
from nanoclaw.ipc._lock import FolderLockedError, acquire_folder_lock
from nanoclaw.ipc._protocol import PROCESSING_SUFFIX, envelope_text, parse_envelope
from nanoclaw.ipc._write import mailbox_dir
from nanoclaw.logger import logger

Deliver = Callable[[str], Awaitable[None]]


class _WakeHandler(FileSystemEventHandler):
    """Watchdog handler that sets an asyncio.Event when an envelope lands."""

    def __init__(self, loop: asyncio.AbstractEventLoop, wake: asyncio.Event) -> None:
        super().__init__()
        self._loop = loop
        self._wake = wake

    def _maybe_wake(self, path_str: str) -> None:
        if path_str.endswith(".json"):
            self._loop.call_soon_threadsafe(self._wake.set)

    def on_created(self, event: Any) -> None:
        if isinstance(event, FileCreatedEvent):
            self._maybe_wake(event.src_path)

    def on_moved(self, event: Any) -> None:
        # Atomic writes (tmp → .json rename) generate moved events, not created
        if isinstance(event, FileMovedEvent):
            self._maybe_wake(event.dest_path)


def _sort_key(path: Path) -> str:
    return path.name.removesuffix(PROCESSING_SUFFIX)


class IpcMailbox:
    """Consumer for ``<data>/ipc/<folder>/messages/``.

    ``poll_once()`` runs a single pass and is safe to call while the
    background loop is running; passes never overlap.
    """

    def __init__(
        self,
        group_folder: str,
        deliver: Deliver,
        poll_interval: float | None = None,
    ) -> None:
        self.group_folder = group_folder
        self._deliver = deliver
        self._poll_interval = (
            poll_interval if poll_interval is not None else get_settings().intervals.ipc_poll
        )
        self._pass_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._observer: Any = None
        self._stopping = False
        self.delivered = 0

    @property
    def directory(self) -> Path:
        return mailbox_dir(self.group_folder)

    def _pending_files(self) -> list[Path]:
        directory = self.directory
        try:
            entries = list(directory.iterdir())
        except FileNotFoundError:
            return []
        pending = [
            p for p in entries if p.name.endswith(".json") or p.name.endswith(".json.processing")
        ]
        return sorted(pending, key=_sort_key)

    def _claim(self, path: Path) -> Path | None:
        """Rename *path* to its ``.processing`` name. None if it vanished."""
        if path.name.endswith(PROCESSING_SUFFIX):
            # Left behind by a consumer that crashed mid-delivery
            return path
        claimed = path.with_name(path.name + PROCESSING_SUFFIX)
        try:
            path.rename(claimed)
        except FileNotFoundError:
            return None
        return claimed

    async def _handle(self, claimed: Path) -> bool:
        try:
            data = parse_envelope(claimed)
        except FileNotFoundError:
            return False
        except ValueError as exc:
            logger.warning(
                "Discarding malformed IPC envelope",
                folder=self.group_folder,
                file=claimed.name,
                err=str(exc),
            )
            claimed.unlink(missing_ok=True)
            return False

        text = envelope_text(data)
        delivered = False
        if text is not None:
            try:
                await self._deliver(text)
                delivered = True
            except Exception as exc:
                logger.error(
                    "IPC envelope delivery failed",
                    folder=self.group_folder,
                    file=claimed.name,
                    err=str(exc),
                )
        claimed.unlink(missing_ok=True)
        return delivered

    async def poll_once(self) -> int:
        """Process every pending envelope once. Returns the number delivered."""
        async with self._pass_lock:
            count = 0
            for path in self._pending_files():
                claimed = self._claim(path)
                if claimed is None:
                    continue
                if await self._handle(claimed):
                    count += 1
            if count:
                self.delivered += count
                logger.debug("IPC envelopes delivered", folder=self.group_folder, count=count)
            return count

    async def _run(self) -> None:
        while not self._stopping:
            try:
                await self.poll_once()
            except OSError as exc:
                logger.error("IPC mailbox poll failed", folder=self.group_folder, err=str(exc))
            if self._stopping:
                break
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wake.wait(), timeout=self._poll_interval)
            self._wake.clear()

    def start(self) -> None:
        if self._task is not None:
            return
        directory = self.directory
        observer = Observer()
        observer.schedule(
            _WakeHandler(asyncio.get_running_loop(), self._wake), str(directory), recursive=False
        )
        observer.daemon = True
        observer.start()
        self._observer = observer
        self._task = asyncio.create_task(self._run(), name=f"ipc-mailbox-{self.group_folder}")

    async def stop(self) -> None:
        """Stop the background loop once its current pass has finished.

        A pass in the middle of delivery runs to completion, so a claimed
        envelope is never handed out twice.
        """
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=2)
            self._observer = None
        if self._task is not None:
            self._stopping = True
            self._wake.set()
            await self._task
            self._task = None
            self._stopping = False


async def sweep_orphaned_mailboxes(
    deliver: Callable[[str, str], Awaitable[None]],
) -> int:
    """Drain every folder's mailbox once (crash recovery at host start).

    *deliver* receives ``(folder, text)``. Returns the number of envelopes
    delivered.
    """
    ipc_base = get_settings().data_dir / "ipc"
    try:
        folders = sorted(d.name for d in ipc_base.iterdir() if (d / "messages").is_dir())
    except FileNotFoundError:
        return 0

    total = 0
    for folder in folders:

        async def _deliver(text: str, folder: str = folder) -> None:
            await deliver(folder, text)

        try:
            lock = acquire_folder_lock(folder)
        except FolderLockedError:
            logger.info("Skipping IPC sweep, folder has a live invocation", folder=folder)
            continue
        try:
            total += await IpcMailbox(folder, _deliver).poll_once()
        finally:
            lock.close()
    if total:
        logger.info("IPC startup sweep delivered envelopes", count=total)
    return total
