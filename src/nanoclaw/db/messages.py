"""Inbound chat messages, the source of every agent prompt."""

from __future__ import annotations

from nanoclaw.db._connection import atomic_write, fetch_all
from nanoclaw.types import NewMessage

_COLUMNS = "id, chat_jid, sender, sender_name, content, timestamp, is_from_me"


async def store_message(msg: NewMessage) -> None:
    """Insert or replace a message (keyed by ``(id, chat_jid)``).

    Channels can deliver a message before its chat metadata, so a bare chat
    row is created alongside it when none exists yet.
    """
    async with atomic_write() as db:
        await db.execute(
            "INSERT OR IGNORE INTO chats (jid, name, last_message_time) VALUES (?, ?, ?)",
            (msg.chat_jid, msg.chat_jid, msg.timestamp),
        )
        await db.execute(
            f"INSERT OR REPLACE INTO messages ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                msg.id,
                msg.chat_jid,
                msg.sender,
                msg.sender_name,
                msg.content,
                msg.timestamp,
                int(bool(msg.is_from_me)),
            ),
        )


async def get_messages_since(chat_jid: str, since_timestamp: str) -> list[NewMessage]:
    """Messages in *chat_jid* newer than the cursor, oldest first.

    The bot's own messages are left out so its replies never come back to
    it as prompt input.
    """
    rows = await fetch_all(
        f"SELECT {_COLUMNS} FROM messages "
        "WHERE chat_jid = ? AND timestamp > ? AND is_from_me = 0 "
        "ORDER BY timestamp",
        (chat_jid, since_timestamp),
    )
    return [
        NewMessage(
            id=row["id"],
            chat_jid=row["chat_jid"],
            sender=row["sender"],
            sender_name=row["sender_name"],
            content=row["content"],
            timestamp=row["timestamp"],
            is_from_me=bool(row["is_from_me"]),
        )
        for row in rows
    ]
