"""aiosqlite connection shared by the host and ``nanoclaw chat``.

Both processes open ``<store>/messages.db`` at the same time, so the file
runs in WAL mode with a busy timeout: readers never block the writer and a
writer waits for the other process instead of failing with "database is
locked".

Every query goes through ``fetch_one``, ``fetch_all``, ``execute`` or
``atomic_write``; nothing outside this module touches the connection.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any

import aiosqlite

from nanoclaw.config import get_settings

_db: aiosqlite.Connection | None = None
_write_lock: asyncio.Lock | None = None

_BUSY_TIMEOUT_MS = 5000

_TABLES = """\
CREATE TABLE IF NOT EXISTS chats (
    jid TEXT PRIMARY KEY,
    name TEXT,
    last_message_time TEXT
);
CREATE TABLE IF NOT EXISTS messages (
    id TEXT,
    chat_jid TEXT REFERENCES chats(jid),
    sender TEXT,
    sender_name TEXT,
    content TEXT,
    timestamp TEXT,
    is_from_me INTEGER,
    PRIMARY KEY (id, chat_jid)
);
CREATE INDEX IF NOT EXISTS idx_messages_by_chat ON messages(chat_jid, timestamp);
CREATE TABLE IF NOT EXISTS scheduled_tasks (
    id TEXT PRIMARY KEY,
    group_folder TEXT NOT NULL,
    chat_jid TEXT NOT NULL,
    prompt TEXT NOT NULL,
    schedule_type TEXT NOT NULL,
    schedule_value TEXT NOT NULL,
    context_mode TEXT DEFAULT 'isolated',
    next_run TEXT,
    last_run TEXT,
    last_result TEXT,
    status TEXT DEFAULT 'active',
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS router_state (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS sessions (
    group_folder TEXT PRIMARY KEY,
    session_id TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS registered_groups (
    jid TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    folder TEXT NOT NULL UNIQUE,
    trigger_pattern TEXT NOT NULL,
    added_at TEXT NOT NULL,
    requires_trigger INTEGER DEFAULT 1
);
"""


def _conn() -> aiosqlite.Connection:
    if _db is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _db


async def fetch_one(sql: str, params: Sequence[Any] = ()) -> aiosqlite.Row | None:
    cursor = await _conn().execute(sql, params)
    return await cursor.fetchone()


async def fetch_all(sql: str, params: Sequence[Any] = ()) -> list[aiosqlite.Row]:
    cursor = await _conn().execute(sql, params)
    return list(await cursor.fetchall())


async def execute(sql: str, params: Sequence[Any] | dict[str, Any] = ()) -> None:
    """Run one write statement and commit it."""
    async with atomic_write() as db:
        await db.execute(sql, params)


@asynccontextmanager
async def atomic_write() -> AsyncIterator[aiosqlite.Connection]:
    """Serialize a group of write statements and commit them together.

    The connection's implicit transaction is shared by every coroutine, so
    two writers interleaving at an await would commit (or roll back) each
    other's statements without the lock.
    """
    global _write_lock
    if _write_lock is None:
        _write_lock = asyncio.Lock()

    db = _conn()
    async with _write_lock:
        try:
            yield db
            await db.commit()
        except Exception:
            await db.rollback()
            raise


async def _open(target: str) -> aiosqlite.Connection:
    global _write_lock
    _write_lock = None
    conn = await aiosqlite.connect(target)
    conn.row_factory = aiosqlite.Row
    if target != ":memory:":
        await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute(f"PRAGMA busy_timeout={_BUSY_TIMEOUT_MS}")
    await conn.executescript(_TABLES)
    await conn.commit()
    return conn


async def init_database() -> None:
    """Open ``<store>/messages.db`` and create any missing tables."""
    global _db
    path = get_settings().store_dir / "messages.db"
    path.parent.mkdir(parents=True, exist_ok=True)
    _db = await _open(str(path))


async def close_database() -> None:
    global _db
    if _db is not None:
        await _db.close()
        _db = None


async def _init_test_database() -> None:
    """Swap in a fresh in-memory database.

    pytest-asyncio gives each test its own event loop, and ``await close()``
    on a connection bound to a dead loop never returns, so the old worker
    thread is stopped and joined directly.
    """
    global _db
    if _db is not None:
        _db.stop()
        if _db._thread is not None and _db._thread.is_alive():
            _db._thread.join(timeout=2)
    _db = await _open(":memory:")
