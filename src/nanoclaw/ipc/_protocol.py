"""IPC envelope format.

An envelope is one JSON object per file. The only type the host acts on is
``{"type": "message", "text": ...}``; any other type is consumed silently.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from nanoclaw.router import strip_internal_tags

PROCESSING_SUFFIX = ".processing"


def parse_envelope(file_path: Path) -> dict[str, Any]:
    """Read and validate an envelope file.

    Raises ValueError (``json.JSONDecodeError`` included) if the file is
    not a JSON object.
    """
    data = json.loads(file_path.read_text())
    if not isinstance(data, dict):
        raise ValueError(f"Envelope must be a JSON object, got {type(data).__name__}")
    return data


def envelope_text(data: dict[str, Any]) -> str | None:
    """Return the deliverable text of an envelope, or None if there is nothing to send."""
    if data.get("type") != "message":
        return None
    text = data.get("text")
    if not isinstance(text, str):
        return None
    stripped = strip_internal_tags(text)
    return stripped or None
