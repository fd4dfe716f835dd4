"""WhatsApp channel using neonize (whatsmeow Python bindings).

Owns the unprefixed JID space: group chats (``<id>@g.us``) and private
chats (``<phone>@s.whatsapp.net``). The neonize client is created in
``connect()``; authentication state lives in ``<store>/neonize.db``.
"""

from __future__ import annotations

import asyncio
import contextlib
import sys
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from nanoclaw.config import get_settings
from nanoclaw.db import update_chat_name
from nanoclaw.logger import logger
from nanoclaw.types import DeliveryError, NewMessage, jid_platform

GROUP_SYNC_INTERVAL: float = 24 * 60 * 60  # 24 hours in seconds

_WHATSAPP_SUFFIXES = ("@g.us", "@s.whatsapp.net")


@dataclass
class _OutgoingMessage:
    jid: str
    text: str


class WhatsAppChannel:
    """WhatsApp channel implemented via neonize (whatsmeow Go bindings)."""

    name = "whatsapp"
    prefix_assistant_name = True

    def __init__(
        self,
        on_message: Callable[[str, NewMessage], Awaitable[None]],
        on_chat_metadata: Callable[[str, str, str | None], Awaitable[None]],
    ) -> None:
        self._on_message = on_message
        self._on_chat_metadata = on_chat_metadata
        self._connected = False
        self._lid_to_phone: dict[str, str] = {}
        self._outgoing_queue: deque[_OutgoingMessage] = deque()
        self._flushing = False
        self._group_sync_task: asyncio.Task[None] | None = None
        self._idle_task: asyncio.Task[None] | None = None
        self._first_connect: asyncio.Event = asyncio.Event()
        self._client: Any = None

    # ------------------------------------------------------------------
    # Channel protocol
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        from neonize.aioze import client as neonize_client
        from neonize.aioze import events as neonize_events
        from neonize.aioze.client import NewAClient

        loop = asyncio.get_running_loop()
        neonize_events.event_global_loop = loop
        neonize_client.event_global_loop = loop

        store_dir = get_settings().store_dir
        store_dir.mkdir(parents=True, exist_ok=True)
        self._client = NewAClient(str(store_dir / "neonize.db"))
        self._register_events()

        @self._client.event.qr
        async def on_qr(_client: Any, qr_data: bytes) -> None:  # noqa: ARG001
            logger.error("WhatsApp authentication required. Pair the device, then restart.")
            await asyncio.sleep(1)
            sys.exit(1)

        await self._client.connect()
        self._idle_task = asyncio.ensure_future(self._client.idle())
        await self._first_connect.wait()

    async def send_message(self, jid: str, text: str) -> None:
        if not self._connected:
            self._outgoing_queue.append(_OutgoingMessage(jid=jid, text=text))
            logger.info(
                "WhatsApp disconnected, message queued",
                jid=jid,
                queued=len(self._outgoing_queue),
            )
            return
        try:
            await self._client.send_message(self._parse_jid(jid), text)
        except Exception as err:
            raise DeliveryError(self.name, jid, str(err)) from err
        logger.info("WhatsApp message sent", jid=jid, length=len(text))

    async def set_typing(self, jid: str, is_typing: bool) -> None:
        if not self._connected:
            return
        try:
            from neonize.utils.enum import ChatPresence, ChatPresenceMedia

            presence = (
                ChatPresence.CHAT_PRESENCE_COMPOSING
                if is_typing
                else ChatPresence.CHAT_PRESENCE_PAUSED
            )
            await self._client.send_chat_presence(
                self._parse_jid(jid), presence, ChatPresenceMedia.CHAT_PRESENCE_MEDIA_TEXT
            )
        except Exception as err:
            logger.debug("Failed to update typing status", jid=jid, error=str(err))

    def is_connected(self) -> bool:
        return self._connected

    def owns_jid(self, jid: str) -> bool:
        return jid_platform(jid) is None and jid.endswith(_WHATSAPP_SUFFIXES)

    async def disconnect(self) -> None:
        self._connected = False
        if self._group_sync_task:
            self._group_sync_task.cancel()
        if self._idle_task:
            self._idle_task.cancel()
        if self._client is not None:
            with contextlib.suppress(Exception):
                await self._client.disconnect()

    # ------------------------------------------------------------------
    # Internal: neonize events
    # ------------------------------------------------------------------

    def _register_events(self) -> None:
        from neonize.events import (
            ConnectedEv,
            ConnectFailureEv,
            DisconnectedEv,
            LoggedOutEv,
            MessageEv,
            PairStatusEv,
        )

        @self._client.event(ConnectedEv)
        async def on_connected(_client: Any, _ev: Any) -> None:
            self._connected = True
            logger.info("Connected to WhatsApp")
            device = self._client.me
            if device:
                jid = getattr(device, "JID", None)
                lid = getattr(device, "LID", None)
                if jid and lid and lid.User:
                    self._lid_to_phone[lid.User] = f"{jid.User}@s.whatsapp.net"

            asyncio.ensure_future(self._flush_outgoing_queue())
            if self._group_sync_task is None:
                self._group_sync_task = asyncio.ensure_future(self._periodic_group_sync())
            self._first_connect.set()

        @self._client.event(DisconnectedEv)
        async def on_disconnected(_client: Any, _ev: Any) -> None:
            self._connected = False
            logger.warning("Disconnected from WhatsApp")

        @self._client.event(LoggedOutEv)
        async def on_logged_out(_client: Any, _ev: Any) -> None:
            self._connected = False
            logger.error("Logged out from WhatsApp. Re-pair the device, then restart.")
            sys.exit(0)

        @self._client.event(ConnectFailureEv)
        async def on_connect_failure(_client: Any, _ev: Any) -> None:
            self._connected = False
            logger.error("WhatsApp connection failed")

        @self._client.event(PairStatusEv)
        async def on_pair_status(_client: Any, ev: Any) -> None:
            logger.info("WhatsApp paired", user=ev.ID.User)

        @self._client.event(MessageEv)
        async def on_message(_client: Any, message: Any) -> None:
            try:
                await self._handle_message(message)
            except Exception:
                logger.exception(
                    "Unhandled error in message handler",
                    message_id=getattr(getattr(message, "Info", None), "ID", "unknown"),
                )

    async def _handle_message(self, message: Any) -> None:
        from neonize.utils.jid import Jid2String

        info = message.Info
        source = info.MessageSource
        raw_jid = Jid2String(source.Chat)
        if not raw_jid or raw_jid == "status@broadcast":
            return
        chat_jid = self._translate_jid(raw_jid, source.Chat)
        ts = info.Timestamp
        if ts > 1e10:
            ts = ts / 1000
        timestamp = datetime.fromtimestamp(ts, tz=UTC).isoformat()
        await self._on_chat_metadata(chat_jid, timestamp, None)

        msg = message.Message
        content = (
            msg.conversation
            or msg.extendedTextMessage.text
            or msg.imageMessage.caption
            or msg.videoMessage.caption
            or ""
        )
        # Our own outbound echoes come back prefixed with the assistant name
        if source.IsFromMe and content.startswith(f"{get_settings().agent.name}:"):
            return

        sender_jid = Jid2String(source.Sender)
        sender_name = info.Pushname or source.Sender.User or sender_jid.split("@")[0]
        new_msg = NewMessage(
            id=info.ID,
            chat_jid=chat_jid,
            sender=sender_jid,
            sender_name=sender_name,
            content=content,
            timestamp=timestamp,
            is_from_me=source.IsFromMe,
        )
        await self._on_message(chat_jid, new_msg)

    # ------------------------------------------------------------------
    # Internal: queue flush and group sync
    # ------------------------------------------------------------------

    async def _flush_outgoing_queue(self) -> None:
        if self._flushing or not self._outgoing_queue:
            return
        self._flushing = True
        logger.info("Flushing outgoing WhatsApp queue", count=len(self._outgoing_queue))
        try:
            while self._outgoing_queue and self._connected:
                item = self._outgoing_queue[0]
                try:
                    await self._client.send_message(self._parse_jid(item.jid), item.text)
                except Exception as err:
                    logger.warning("Queued message send failed", jid=item.jid, error=str(err))
                    break
                self._outgoing_queue.popleft()
        finally:
            self._flushing = False

    async def _sync_group_metadata(self) -> None:
        from neonize.utils.jid import Jid2String

        try:
            groups = await self._client.get_joined_groups()
            count = 0
            for group in groups:
                name = group.GroupName.Name
                if name:
                    await update_chat_name(Jid2String(group.JID), name)
                    count += 1
            logger.info("Group metadata synced", count=count)
        except Exception as err:
            logger.error("Failed to sync group metadata", error=str(err))

    async def _periodic_group_sync(self) -> None:
        while True:
            await self._sync_group_metadata()
            await asyncio.sleep(GROUP_SYNC_INTERVAL)

    def _translate_jid(self, jid_str: str, jid: Any) -> str:
        if jid.Server != "lid":
            return jid_str
        lid_user = jid.User.split(":")[0]
        return self._lid_to_phone.get(lid_user, jid_str)

    @staticmethod
    def _parse_jid(jid_str: str) -> Any:
        from neonize.utils.jid import build_jid

        if "@" not in jid_str:
            return build_jid(jid_str)
        user, server = jid_str.split("@", 1)
        return build_jid(user, server)
