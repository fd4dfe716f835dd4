"""Chats registered to an agent folder."""

from __future__ import annotations

from nanoclaw.db._connection import atomic_write, fetch_all
from nanoclaw.types import RegisteredGroup


async def set_registered_group(jid: str, group: RegisteredGroup) -> None:
    """Register *jid* to ``group.folder``, or update its existing registration.

    A folder belongs to exactly one chat: registering it to a second JID
    raises ValueError and leaves the table unchanged. Registering the same
    chat again with the same fields is a no-op.
    """
    missing = [f for f in ("name", "folder", "trigger") if not getattr(group, f)]
    if missing:
        raise ValueError(f"Registered group is missing {', '.join(missing)}")

    async with atomic_write() as db:
        cursor = await db.execute(
            "SELECT jid FROM registered_groups WHERE folder = ? AND jid != ?",
            (group.folder, jid),
        )
        owner = await cursor.fetchone()
        if owner is not None:
            raise ValueError(f"Folder {group.folder!r} is already registered to {owner['jid']}")
        await db.execute(
            """
            INSERT INTO registered_groups
                (jid, name, folder, trigger_pattern, added_at, requires_trigger)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(jid) DO UPDATE SET
                name = excluded.name,
                folder = excluded.folder,
                trigger_pattern = excluded.trigger_pattern,
                requires_trigger = excluded.requires_trigger
            """,
            (
                jid,
                group.name,
                group.folder,
                group.trigger,
                group.added_at,
                int(group.requires_trigger),
            ),
        )


async def get_all_registered_groups() -> dict[str, RegisteredGroup]:
    """Every registration, keyed by chat JID."""
    rows = await fetch_all(
        "SELECT jid, name, folder, trigger_pattern, added_at, requires_trigger "
        "FROM registered_groups"
    )
    return {
        row["jid"]: RegisteredGroup(
            name=row["name"],
            folder=row["folder"],
            trigger=row["trigger_pattern"],
            added_at=row["added_at"],
            requires_trigger=bool(row["requires_trigger"]),
        )
        for row in rows
    }
