"""Scheduled tasks, read for the conversation snapshot.

The agent owns these rows; the host only lists them into
``current_tasks.json`` before each turn.
"""

from __future__ import annotations

from dataclasses import fields

from nanoclaw.db._connection import fetch_all
from nanoclaw.types import ScheduledTask

_TASK_FIELDS = tuple(f.name for f in fields(ScheduledTask))


async def get_all_tasks() -> list[ScheduledTask]:
    """Every task, newest first."""
    rows = await fetch_all(
        f"SELECT {', '.join(_TASK_FIELDS)} FROM scheduled_tasks ORDER BY created_at DESC"
    )
    tasks = []
    for row in rows:
        values = {name: row[name] for name in _TASK_FIELDS}
        values["context_mode"] = values["context_mode"] or "isolated"
        values["status"] = values["status"] or "active"
        tasks.append(ScheduledTask(**values))
    return tasks
