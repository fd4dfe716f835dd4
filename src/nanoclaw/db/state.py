"""Host state that survives restarts: agent cursors and session tokens."""

from __future__ import annotations

import json

from nanoclaw.db._connection import execute, fetch_all, fetch_one
from nanoclaw.logger import logger

AGENT_CURSORS_KEY = "last_agent_timestamp"


async def get_router_state(key: str) -> str | None:
    row = await fetch_one("SELECT value FROM router_state WHERE key = ?", (key,))
    return row["value"] if row else None


async def set_router_state(key: str, value: str) -> None:
    await execute(
        "INSERT INTO router_state (key, value) VALUES (?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, value),
    )


async def get_agent_cursors() -> dict[str, str]:
    """Per-chat timestamp of the last message handed to the agent.

    A missing or unreadable value yields an empty map, which replays each
    chat's history from the start on the next turn.
    """
    raw = await get_router_state(AGENT_CURSORS_KEY)
    if not raw:
        return {}
    try:
        cursors = json.loads(raw)
    except json.JSONDecodeError:
        cursors = None
    if not isinstance(cursors, dict):
        logger.warning("Corrupted agent cursors in router_state, resetting")
        return {}
    return {str(jid): str(ts) for jid, ts in cursors.items()}


async def set_agent_cursors(cursors: dict[str, str]) -> None:
    await set_router_state(AGENT_CURSORS_KEY, json.dumps(cursors, sort_keys=True))


async def set_session(group_folder: str, session_id: str) -> None:
    """Replace the folder's session token."""
    await execute(
        "INSERT INTO sessions (group_folder, session_id) VALUES (?, ?) "
        "ON CONFLICT(group_folder) DO UPDATE SET session_id = excluded.session_id",
        (group_folder, session_id),
    )


async def get_all_sessions() -> dict[str, str]:
    rows = await fetch_all("SELECT group_folder, session_id FROM sessions")
    return {row["group_folder"]: row["session_id"] for row in rows}
