"""Message formatting and channel routing.

``ChannelRouter`` sits between the channels and the orchestrator: it records
chat metadata for every chat, forwards messages only for registered chats,
and picks the owning channel for outbound text.
"""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable, Mapping
from typing import TYPE_CHECKING

from nanoclaw.config import get_settings
from nanoclaw.db import store_chat_metadata, store_message
from nanoclaw.logger import logger
from nanoclaw.types import DeliveryError

if TYPE_CHECKING:
    from nanoclaw.types import Channel, NewMessage, RegisteredGroup

_INTERNAL_TAG_RE = re.compile(r"<internal>[\s\S]*?</internal>")


class NoChannelError(RuntimeError):
    """No registered channel owns the JID. Indicates a wiring bug."""


def escape_xml(s: str) -> str:
    """Escape XML special characters."""
    return s.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;").replace('"', "&quot;")


def format_messages(messages: list[NewMessage]) -> str:
    """Format messages as XML for the agent prompt."""
    lines = [
        f'<message sender="{escape_xml(m.sender_name)}" time="{m.timestamp}">'
        f"{escape_xml(m.content)}</message>"
        for m in messages
    ]
    return f"<messages>\n{chr(10).join(lines)}\n</messages>"


def strip_internal_tags(text: str) -> str:
    """Remove <internal>...</internal> blocks and trim whitespace."""
    return _INTERNAL_TAG_RE.sub("", text).strip()


def format_outbound(channel: Channel, raw_text: str) -> str:
    """Strip internal tags and optionally prefix with assistant name."""
    text = strip_internal_tags(raw_text)
    if not text:
        return ""
    prefix_name = getattr(channel, "prefix_assistant_name", None)
    prefix = f"{get_settings().agent.name}: " if prefix_name is not False else ""
    return f"{prefix}{text}"


def find_channel(channels: list[Channel], jid: str) -> Channel | None:
    """Find the channel that owns a given JID, probing in registration order."""
    for c in channels:
        if c.owns_jid(jid):
            return c
    return None


OnInbound = Callable[[str, "NewMessage"], Awaitable[None] | None]


class ChannelRouter:
    """Fan-in for channel events and fan-out for outbound text.

    *registered* is the live jid -> RegisteredGroup mapping owned by the
    app; it is read on every inbound message so registrations made at
    runtime take effect immediately.
    """

    def __init__(
        self,
        registered: Mapping[str, RegisteredGroup],
        on_inbound: OnInbound | None = None,
    ) -> None:
        self.channels: list[Channel] = []
        self._registered = registered
        self._on_inbound = on_inbound

    def add_channel(self, channel: Channel) -> None:
        self.channels.append(channel)

    # -- inbound -------------------------------------------------------------

    async def on_chat_metadata(self, jid: str, timestamp: str, name: str | None = None) -> None:
        """Persist chat metadata unconditionally."""
        await store_chat_metadata(jid, timestamp, name)

    async def on_message(self, jid: str, msg: NewMessage) -> None:
        """Store and forward *msg* if its chat is registered, otherwise drop it."""
        if jid not in self._registered:
            logger.debug("Dropping message from unregistered chat", jid=jid)
            return
        await store_message(msg)
        if self._on_inbound is not None:
            result = self._on_inbound(jid, msg)
            if result is not None:
                await result

    # -- outbound ------------------------------------------------------------

    def owner_of(self, jid: str) -> Channel:
        channel = find_channel(self.channels, jid)
        if channel is None:
            raise NoChannelError(f"No channel for JID: {jid}")
        return channel

    async def send(self, jid: str, text: str) -> bool:
        """Send *text* to *jid* through its owning channel.

        Returns False when the channel reports a delivery failure; the
        failure is logged here and never propagates to the caller.
        """
        channel = self.owner_of(jid)
        formatted = format_outbound(channel, text)
        if not formatted:
            return True
        try:
            await channel.send_message(jid, formatted)
        except DeliveryError as exc:
            logger.error(
                "Outbound delivery failed",
                channel=channel.name,
                jid=jid,
                err=exc.reason,
            )
            return False
        return True

    async def set_typing(self, jid: str, is_typing: bool) -> None:
        channel = find_channel(self.channels, jid)
        if channel is None:
            return
        try:
            await channel.set_typing(jid, is_typing)
        except Exception as exc:
            logger.debug("Failed to set typing indicator", jid=jid, err=str(exc))

    # -- lifecycle -----------------------------------------------------------

    async def connect_all(self) -> None:
        for channel in self.channels:
            await channel.connect()

    async def disconnect_all(self) -> None:
        for channel in self.channels:
            try:
                await channel.disconnect()
            except Exception as exc:
                logger.warning("Channel disconnect failed", channel=channel.name, err=str(exc))
