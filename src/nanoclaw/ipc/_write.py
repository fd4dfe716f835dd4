"""IPC file writing — the producer side of a folder's mailbox.

All writes use atomic rename (tmp → final) so a consumer never sees a
partially-written file.
"""

from __future__ import annotations

import json
import random
import time
from pathlib import Path
from typing import Any

from nanoclaw.config import get_settings


def ipc_dir(group_folder: str) -> Path:
    """Return ``<data>/ipc/<folder>`` (not created)."""
    return get_settings().data_dir / "ipc" / group_folder


def mailbox_dir(group_folder: str) -> Path:
    """Return the messages directory for a folder, creating it if needed."""
    d = ipc_dir(group_folder) / "messages"
    d.mkdir(parents=True, exist_ok=True)
    return d


def write_json_atomic(path: Path, data: Any) -> None:
    """Write *data* as JSON to *path* via tmp + rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp")
    tmp.write_text(json.dumps(data, indent=2))
    tmp.rename(path)


def write_envelope(group_folder: str, envelope: dict[str, Any]) -> Path:
    """Drop one envelope into a folder's mailbox and return its final path."""
    filename = f"{int(time.time() * 1000)}-{random.randbytes(3).hex()}.json"
    filepath = mailbox_dir(group_folder) / filename
    write_json_atomic(filepath, envelope)
    return filepath


def write_message(group_folder: str, text: str) -> Path:
    """Convenience wrapper for the common ``{"type": "message"}`` envelope."""
    return write_envelope(group_folder, {"type": "message", "text": text})
