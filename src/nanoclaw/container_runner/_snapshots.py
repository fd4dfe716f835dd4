"""IPC snapshot helpers — written before container launch for agent to read."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from nanoclaw.ipc import ipc_dir, write_json_atomic


def write_tasks_snapshot(
    folder: str,
    is_main: bool,
    tasks: list[dict[str, Any]],
) -> None:
    """Write current_tasks.json to the group's IPC directory.

    Main sees all tasks; other groups see only their own.
    """
    # Main sees all tasks, others only see their own
    filtered = tasks if is_main else [t for t in tasks if t.get("groupFolder") == folder]
    write_json_atomic(ipc_dir(folder) / "current_tasks.json", filtered)


def write_groups_snapshot(
    folder: str,
    is_main: bool,
    groups: list[dict[str, Any]],
    registered_jids: set[str],
) -> None:
    """Write available_groups.json to the group's IPC directory."""
    # Main sees all groups; others see nothing (they can't activate groups)
    visible = (
        [{**g, "isRegistered": g.get("jid") in registered_jids} for g in groups]
        if is_main
        else []
    )
    payload = {
        "groups": visible,
        "lastSync": datetime.now(UTC).isoformat(),
    }
    write_json_atomic(ipc_dir(folder) / "available_groups.json", payload)
