"""Tests for the database layer."""

from __future__ import annotations

import pytest

from nanoclaw.db import (
    _init_test_database,
    get_agent_cursors,
    get_all_chats,
    get_all_registered_groups,
    get_all_sessions,
    get_all_tasks,
    get_messages_since,
    get_router_state,
    set_agent_cursors,
    set_registered_group,
    set_router_state,
    set_session,
    store_chat_metadata,
    store_message,
    update_chat_name,
)
from nanoclaw.db._connection import execute
from nanoclaw.types import NewMessage, RegisteredGroup


@pytest.fixture(autouse=True)
async def _setup_db():
    await _init_test_database()


def _store(
    *,
    id: str,
    content: str,
    timestamp: str,
    chat_jid: str = "group@g.us",
    sender_name: str = "Alice",
    is_from_me: bool = False,
) -> NewMessage:
    return NewMessage(
        id=id,
        chat_jid=chat_jid,
        sender=f"{sender_name}@s.whatsapp.net",
        sender_name=sender_name,
        content=content,
        timestamp=timestamp,
        is_from_me=is_from_me,
    )


def _group(folder: str = "family", name: str = "Family") -> RegisteredGroup:
    return RegisteredGroup(
        name=name, folder=folder, trigger="@Andy", added_at="2024-01-01T00:00:00.000Z"
    )


# --- messages ---


class TestStoreMessage:
    async def test_stores_a_message_and_retrieves_it(self):
        await store_chat_metadata("group@g.us", "2024-01-01T00:00:00.000Z")
        await store_message(
            _store(id="msg-1", content="hello world", timestamp="2024-01-01T00:00:01.000Z")
        )

        messages = await get_messages_since("group@g.us", "2024-01-01T00:00:00.000Z")
        assert len(messages) == 1
        assert messages[0].id == "msg-1"
        assert messages[0].sender == "Alice@s.whatsapp.net"
        assert messages[0].content == "hello world"
        assert messages[0].is_from_me is False

    async def test_creates_chat_row_when_missing(self):
        await store_message(_store(id="m", content="x", timestamp="2024-01-01T00:00:01.000Z"))

        chats = await get_all_chats()
        assert [c["jid"] for c in chats] == ["group@g.us"]

    async def test_upserts_on_duplicate_id_chat_jid(self):
        await store_message(_store(id="dup", content="original", timestamp="2024-01-01T00:00:01Z"))
        await store_message(_store(id="dup", content="updated", timestamp="2024-01-01T00:00:01Z"))

        messages = await get_messages_since("group@g.us", "")
        assert [m.content for m in messages] == ["updated"]


class TestGetMessagesSince:
    @pytest.fixture(autouse=True)
    async def _seed_messages(self):
        for id_, content, ts, sender in [
            ("m1", "first", "2024-01-01T00:00:01.000Z", "Alice"),
            ("m2", "second", "2024-01-01T00:00:02.000Z", "Bob"),
            ("m4", "third", "2024-01-01T00:00:04.000Z", "Carol"),
        ]:
            await store_message(_store(id=id_, content=content, timestamp=ts, sender_name=sender))
        await store_message(
            _store(
                id="m3",
                content="bot reply",
                timestamp="2024-01-01T00:00:03.000Z",
                sender_name="Andy",
                is_from_me=True,
            )
        )
        await store_message(
            _store(
                id="x1",
                content="elsewhere",
                timestamp="2024-01-01T00:00:05.000Z",
                chat_jid="other@g.us",
            )
        )

    async def test_returns_messages_after_timestamp(self):
        messages = await get_messages_since("group@g.us", "2024-01-01T00:00:02.000Z")
        assert [m.content for m in messages] == ["third"]

    async def test_empty_cursor_returns_everything_in_order(self):
        messages = await get_messages_since("group@g.us", "")
        assert [m.id for m in messages] == ["m1", "m2", "m4"]

    async def test_excludes_own_messages(self):
        messages = await get_messages_since("group@g.us", "")
        assert all(m.content != "bot reply" for m in messages)

    async def test_scoped_to_chat(self):
        messages = await get_messages_since("other@g.us", "")
        assert [m.content for m in messages] == ["elsewhere"]


# --- chats ---


class TestChatMetadata:
    async def test_keeps_latest_timestamp(self):
        await store_chat_metadata("group@g.us", "2024-01-01T00:00:05.000Z", "Family")
        await store_chat_metadata("group@g.us", "2024-01-01T00:00:01.000Z")

        (chat,) = await get_all_chats()
        assert chat["last_message_time"] == "2024-01-01T00:00:05.000Z"
        assert chat["name"] == "Family"

    async def test_name_defaults_to_jid(self):
        await store_chat_metadata("group@g.us", "2024-01-01T00:00:01.000Z")
        (chat,) = await get_all_chats()
        assert chat["name"] == "group@g.us"

    async def test_update_chat_name_keeps_timestamp(self):
        await store_chat_metadata("group@g.us", "2024-01-01T00:00:01.000Z")
        await update_chat_name("group@g.us", "Renamed")

        (chat,) = await get_all_chats()
        assert chat["name"] == "Renamed"
        assert chat["last_message_time"] == "2024-01-01T00:00:01.000Z"

    async def test_ordered_by_recent_activity(self):
        await store_chat_metadata("old@g.us", "2024-01-01T00:00:01.000Z")
        await store_chat_metadata("new@g.us", "2024-01-02T00:00:01.000Z")

        assert [c["jid"] for c in await get_all_chats()] == ["new@g.us", "old@g.us"]


# --- sessions and router state ---


class TestSessions:
    async def test_no_sessions(self):
        assert await get_all_sessions() == {}

    async def test_overwrite_replaces_token(self):
        await set_session("family", "s1")
        await set_session("family", "s2")
        await set_session("work", "w1")
        assert await get_all_sessions() == {"family": "s2", "work": "w1"}

    async def test_router_state_roundtrip(self):
        assert await get_router_state("last_agent_timestamp") is None
        await set_router_state("last_agent_timestamp", '{"a": "1"}')
        await set_router_state("last_agent_timestamp", '{"a": "2"}')
        assert await get_router_state("last_agent_timestamp") == '{"a": "2"}'


class TestAgentCursors:
    async def test_missing_is_empty(self):
        assert await get_agent_cursors() == {}

    async def test_roundtrip(self):
        await set_agent_cursors({"group@g.us": "2024-01-01T00:00:02Z", "slack:U1": ""})
        assert await get_agent_cursors() == {
            "group@g.us": "2024-01-01T00:00:02Z",
            "slack:U1": "",
        }

    @pytest.mark.parametrize("raw", ["{not json", "[1, 2]", '"text"'])
    async def test_unreadable_value_resets(self, raw):
        await set_router_state("last_agent_timestamp", raw)
        assert await get_agent_cursors() == {}


# --- registered groups ---


class TestRegisteredGroups:
    async def test_register_and_fetch(self):
        await set_registered_group("group@g.us", _group())

        groups = await get_all_registered_groups()
        assert groups == {"group@g.us": _group()}
        assert groups["group@g.us"].requires_trigger is True

    async def test_reregistering_is_idempotent(self):
        await set_registered_group("group@g.us", _group())
        await set_registered_group("group@g.us", _group())

        assert await get_all_registered_groups() == {"group@g.us": _group()}

    async def test_folder_owned_by_another_chat_is_rejected(self):
        await set_registered_group("group@g.us", _group())

        with pytest.raises(ValueError, match="already registered"):
            await set_registered_group("other@g.us", _group(name="Other"))

        assert set(await get_all_registered_groups()) == {"group@g.us"}

    async def test_update_keeps_single_row(self):
        await set_registered_group("group@g.us", _group())
        await set_registered_group("group@g.us", _group(name="Renamed"))

        groups = await get_all_registered_groups()
        assert groups["group@g.us"].name == "Renamed"
        assert len(groups) == 1

    @pytest.mark.parametrize("field", ["name", "folder", "trigger"])
    async def test_empty_fields_rejected(self, field):
        group = _group()
        setattr(group, field, "")
        with pytest.raises(ValueError, match=field):
            await set_registered_group("group@g.us", group)

        assert await get_all_registered_groups() == {}

    async def test_requires_trigger_false_persists(self):
        group = _group()
        group.requires_trigger = False
        await set_registered_group("dm@s.whatsapp.net", group)

        groups = await get_all_registered_groups()
        assert groups["dm@s.whatsapp.net"].requires_trigger is False


# --- tasks ---


class TestTasks:
    async def test_lists_newest_first_with_defaults(self):
        for task_id, created in [("t1", "2024-01-01T00:00:00Z"), ("t2", "2024-01-02T00:00:00Z")]:
            await execute(
                "INSERT INTO scheduled_tasks (id, group_folder, chat_jid, prompt, "
                "schedule_type, schedule_value, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    task_id,
                    "family",
                    "group@g.us",
                    "water the plants",
                    "cron",
                    "0 9 * * *",
                    created,
                ),
            )

        tasks = await get_all_tasks()

        assert [t.id for t in tasks] == ["t2", "t1"]
        assert tasks[0].status == "active"
        assert tasks[0].context_mode == "isolated"
        assert tasks[0].to_snapshot_dict()["groupFolder"] == "family"

    async def test_no_tasks(self):
        assert await get_all_tasks() == []
