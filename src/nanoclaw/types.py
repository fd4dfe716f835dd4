"""Data models for nanoclaw."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal, Protocol, runtime_checkable

_PLATFORM_PREFIX_RE = re.compile(r"^([a-z][a-z0-9_-]*):")


def jid_platform(jid: str) -> str | None:
    """Return the ``platform`` of a ``platform:id`` JID, or None for the default platform.

    WhatsApp JIDs (``123@g.us``) carry no prefix; every other platform
    namespaces its identifiers (``slack:U123``).
    """
    match = _PLATFORM_PREFIX_RE.match(jid)
    return match.group(1) if match else None


def is_group_jid(jid: str) -> bool:
    """True for WhatsApp group chats. Slack JIDs name a single user."""
    return jid_platform(jid) is None and jid.endswith("@g.us")


class DeliveryError(Exception):
    """A channel could not hand a message to its transport."""

    def __init__(self, channel: str, jid: str, reason: str) -> None:
        super().__init__(f"{channel}: delivery to {jid} failed: {reason}")
        self.channel = channel
        self.jid = jid
        self.reason = reason


@dataclass
class RegisteredGroup:
    name: str
    folder: str  # Folder under groups/, unique across groups
    trigger: str  # @mention to activate (e.g., "@Andy")
    added_at: str
    requires_trigger: bool = True  # False for 1-on-1 chats


@dataclass
class NewMessage:
    id: str
    chat_jid: str
    sender: str
    sender_name: str
    content: str
    timestamp: str
    is_from_me: bool | None = None


@dataclass
class ScheduledTask:
    id: str
    group_folder: str
    chat_jid: str
    prompt: str
    schedule_type: Literal["cron", "interval", "once"]
    schedule_value: str
    context_mode: Literal["group", "isolated"]
    next_run: str | None = None
    last_run: str | None = None
    last_result: str | None = None
    status: Literal["active", "paused", "completed"] = "active"
    created_at: str = ""

    def to_snapshot_dict(self) -> dict[str, str | None]:
        """Serialize to the dict format expected by write_tasks_snapshot."""
        return {
            "id": self.id,
            "groupFolder": self.group_folder,
            "prompt": self.prompt,
            "schedule_type": self.schedule_type,
            "schedule_value": self.schedule_value,
            "status": self.status,
            "next_run": self.next_run,
        }


@dataclass
class ContainerInput:
    prompt: str
    group_folder: str
    chat_jid: str
    is_main: bool
    session_id: str | None = None


@dataclass
class ContainerOutput:
    status: Literal["success", "error"]
    result: str | None = None
    new_session_id: str | None = None
    error: str | None = None


@dataclass
class VolumeMount:
    host_path: str
    container_path: str
    readonly: bool = False


@dataclass
class ContainerInfo:
    """One row of the runtime's container listing."""

    name: str
    status: str  # "running", "exited", ... as reported by the runtime


# --- Channel abstraction ---


@runtime_checkable
class Channel(Protocol):
    name: str

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def send_message(self, jid: str, text: str) -> None:
        """Deliver *text* to *jid*. Raises DeliveryError on a transport fault."""
        ...

    async def set_typing(self, jid: str, is_typing: bool) -> None:
        """Best-effort typing indicator. A no-op implementation is valid."""
        ...

    def is_connected(self) -> bool: ...

    def owns_jid(self, jid: str) -> bool:
        """Pure prefix/suffix check. Channels partition the JID space."""
        ...

    # Whether to prefix outbound messages with the assistant name.
    # Slack bots already display their name, so they return false.
    # prefix_assistant_name is NOT part of the protocol; read it with getattr.
