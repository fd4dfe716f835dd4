"""Per-folder advisory lock shared by every nanoclaw process on the host.

The host and ``nanoclaw chat`` both run agent turns. Whoever holds
``<data>/ipc/<folder>/.lock`` owns that folder's sandbox, snapshots and
mailbox until the handle is closed.
"""

from __future__ import annotations

import fcntl
from typing import TextIO

from nanoclaw.ipc._write import ipc_dir


class FolderLockedError(RuntimeError):
    """Another process (or handle) holds the folder lock."""

    def __init__(self, group_folder: str) -> None:
        super().__init__(f"IPC folder {group_folder!r} is locked by another process")
        self.group_folder = group_folder


def acquire_folder_lock(group_folder: str) -> TextIO:
    """Take the folder's exclusive lock without blocking.

    Returns the open handle; closing it releases the lock. Raises
    FolderLockedError if the lock is already held.
    """
    path = ipc_dir(group_folder) / ".lock"
    path.parent.mkdir(parents=True, exist_ok=True)
    # a+ keeps the inode stable so every process locks the same file
    handle = open(path, "a+", encoding="utf-8")  # noqa: SIM115
    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError as exc:
        handle.close()
        raise FolderLockedError(group_folder) from exc
    return handle
