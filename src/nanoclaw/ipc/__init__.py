"""Filesystem IPC between the host and agent containers."""

from nanoclaw.ipc._lock import FolderLockedError, acquire_folder_lock
from nanoclaw.ipc._mailbox import IpcMailbox, sweep_orphaned_mailboxes
from nanoclaw.ipc._protocol import envelope_text, parse_envelope
from nanoclaw.ipc._write import (
    ipc_dir,
    mailbox_dir,
    write_envelope,
    write_json_atomic,
    write_message,
)

__all__ = [
    "FolderLockedError",
    "IpcMailbox",
    "acquire_folder_lock",
    "envelope_text",
    "ipc_dir",
    "mailbox_dir",
    "parse_envelope",
    "sweep_orphaned_mailboxes",
    "write_envelope",
    "write_json_atomic",
    "write_message",
]
