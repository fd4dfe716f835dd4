"""Every chat a channel has seen, registered or not.

The main folder's ``available_groups.json`` snapshot is built from these
rows so the agent there can offer unregistered group chats for
registration.
"""

from __future__ import annotations

from datetime import UTC, datetime

from nanoclaw.db._connection import execute, fetch_all

# The name is only overwritten when the channel actually knows one; activity
# time never moves backwards, since channels may report out of order.
_UPSERT = """
    INSERT INTO chats (jid, name, last_message_time) VALUES (:jid, COALESCE(:name, :jid), :ts)
    ON CONFLICT(jid) DO UPDATE SET
        name = COALESCE(:name, chats.name),
        last_message_time = MAX(chats.last_message_time, excluded.last_message_time)
"""


async def store_chat_metadata(chat_jid: str, timestamp: str, name: str | None = None) -> None:
    await execute(_UPSERT, {"jid": chat_jid, "name": name or None, "ts": timestamp})


async def update_chat_name(chat_jid: str, name: str) -> None:
    """Rename a chat, e.g. after a WhatsApp group metadata sync.

    A chat seen here for the first time is stamped with the current time.
    """
    await execute(
        "INSERT INTO chats (jid, name, last_message_time) VALUES (?, ?, ?) "
        "ON CONFLICT(jid) DO UPDATE SET name = excluded.name",
        (chat_jid, name, datetime.now(UTC).isoformat()),
    )


async def get_all_chats() -> list[dict[str, str]]:
    """Known chats, most recently active first."""
    rows = await fetch_all(
        "SELECT jid, name, last_message_time FROM chats ORDER BY last_message_time DESC"
    )
    return [dict(row) for row in rows]
