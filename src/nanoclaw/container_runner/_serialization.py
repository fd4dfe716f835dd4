"""Serialization helpers — camelCase/snake_case boundary crossing.

Converts ContainerInput to dict for JSON transport into the container,
and parses JSON output from the container back to ContainerOutput.
"""

from __future__ import annotations

import json
from typing import Any

from nanoclaw.types import ContainerInput, ContainerOutput


def _input_to_dict(input_data: ContainerInput) -> dict[str, Any]:
    """Convert ContainerInput to the dict the agent-runner reads from stdin."""
    d: dict[str, Any] = {
        "prompt": input_data.prompt,
        "groupFolder": input_data.group_folder,
        "chatJid": input_data.chat_jid,
        "isMain": input_data.is_main,
    }
    if input_data.session_id is not None:
        d["sessionId"] = input_data.session_id
    return d


def _parse_container_output(json_str: str) -> ContainerOutput:
    """Parse JSON from the agent-runner into ContainerOutput.

    Raises json.JSONDecodeError on invalid JSON, KeyError if ``status`` is
    missing, ValueError if ``status`` is not one of success/error.
    """
    data = json.loads(json_str)
    status = data["status"]
    if status not in ("success", "error"):
        raise ValueError(f"Unknown output status: {status!r}")
    result = data.get("result")
    if result is not None and not isinstance(result, str):
        result = json.dumps(result)
    return ContainerOutput(
        status=status,
        result=result,
        new_session_id=data.get("newSessionId", data.get("new_session_id")),
        error=data.get("error"),
    )
