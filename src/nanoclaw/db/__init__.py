"""SQLite persistence for the host: chats, messages, registrations, state.

Re-exports the public API so callers can ``from nanoclaw.db import ...``.
"""

from nanoclaw.db._connection import (
    _init_test_database,
    close_database,
    init_database,
)
from nanoclaw.db.chats import get_all_chats, store_chat_metadata, update_chat_name
from nanoclaw.db.groups import get_all_registered_groups, set_registered_group
from nanoclaw.db.messages import get_messages_since, store_message
from nanoclaw.db.state import (
    get_agent_cursors,
    get_all_sessions,
    get_router_state,
    set_agent_cursors,
    set_router_state,
    set_session,
)
from nanoclaw.db.tasks import get_all_tasks

__all__ = [
    "_init_test_database",
    "close_database",
    "get_agent_cursors",
    "get_all_chats",
    "get_all_registered_groups",
    "get_all_sessions",
    "get_all_tasks",
    "get_messages_since",
    "get_router_state",
    "init_database",
    "set_agent_cursors",
    "set_registered_group",
    "set_router_state",
    "set_session",
    "store_chat_metadata",
    "store_message",
    "update_chat_name",
]
