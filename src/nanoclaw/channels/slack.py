"""Slack channel — direct messages over Socket Mode (bolt).

Each Slack DM is identified by a JID of the form ``slack:<USER_ID>`` so it
coexists with WhatsApp's unprefixed JIDs. Only direct messages are handled;
channel posts, edits and bot messages are ignored.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from nanoclaw.logger import logger
from nanoclaw.types import DeliveryError, NewMessage

JID_PREFIX = "slack:"
MAX_MESSAGE_LENGTH = 4000


def _jid(user_id: str) -> str:
    """Convert a Slack user ID to a nanoclaw JID."""
    return f"{JID_PREFIX}{user_id}"


def _channel_id_from_jid(jid: str) -> str:
    """Extract the Slack conversation target from a nanoclaw JID.

    ``chat.postMessage`` accepts a user ID as the channel and opens the DM.
    """
    return jid.removeprefix(JID_PREFIX)


def split_text(text: str, max_len: int = MAX_MESSAGE_LENGTH) -> list[str]:
    """Cut *text* into consecutive chunks of at most *max_len* characters.

    Cuts fall at exact character offsets with no regard for word or line
    boundaries. Empty text yields a single empty chunk.
    """
    if len(text) <= max_len:
        return [text]
    return [text[i : i + max_len] for i in range(0, len(text), max_len)]


class _TtlCache:
    """Bounded cache with per-entry TTL for Slack API lookups.

    Evicts expired entries lazily on get/put.  Hard-caps at ``max_size``
    entries to bound memory regardless of TTL.
    """

    def __init__(self, ttl_seconds: float = 3600, max_size: int = 500) -> None:
        self._ttl = ttl_seconds
        self._max_size = max_size
        self._data: dict[str, tuple[str, float]] = {}  # key → (value, expiry_mono)

    def get(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expiry = entry
        if time.monotonic() > expiry:
            del self._data[key]
            return None
        return value

    def put(self, key: str, value: str) -> None:
        if len(self._data) >= self._max_size:
            self._evict_expired()
        # If still at capacity after eviction, drop oldest entry
        if len(self._data) >= self._max_size:
            oldest_key = next(iter(self._data))
            del self._data[oldest_key]
        self._data[key] = (value, time.monotonic() + self._ttl)

    def _evict_expired(self) -> None:
        now = time.monotonic()
        self._data = {k: v for k, v in self._data.items() if v[1] > now}


class SlackChannel:
    """``Channel`` protocol implementation backed by Slack Socket Mode."""

    name = "slack"
    prefix_assistant_name: bool = False  # Slack shows the bot username already

    def __init__(
        self,
        bot_token: str,
        app_token: str,
        on_message: Callable[[str, NewMessage], Awaitable[None]],
        on_chat_metadata: Callable[[str, str, str | None], Awaitable[None]],
    ) -> None:
        self._bot_token = bot_token
        self._app_token = app_token
        self._on_message = on_message
        self._on_chat_metadata = on_chat_metadata
        self._connected = False
        self._shutting_down = False

        # Lazy-initialised in connect()
        self._app: Any = None
        self._handler: Any = None
        self._handler_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        # Names change rarely; 1 hour TTL, bounded to 500 entries.
        self._user_name_cache = _TtlCache(ttl_seconds=3600, max_size=500)

    # ------------------------------------------------------------------
    # Channel protocol
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler
        from slack_bolt.async_app import AsyncApp

        self._app = AsyncApp(token=self._bot_token)
        self._register_handlers()

        self._handler = AsyncSocketModeHandler(self._app, self._app_token)
        self._handler_task = asyncio.create_task(
            self._handler.start_async(), name="slack-socket-mode"
        )
        self._handler_task.add_done_callback(self._on_handler_done)
        self._connected = True
        logger.info("Slack channel connected (Socket Mode)")

    async def send_message(self, jid: str, text: str) -> None:
        if not self._app:
            raise DeliveryError(self.name, jid, "Slack app not initialized")
        channel_id = _channel_id_from_jid(jid)
        try:
            for chunk in split_text(text, MAX_MESSAGE_LENGTH):
                await self._app.client.chat_postMessage(channel=channel_id, text=chunk)
        except Exception as exc:
            raise DeliveryError(self.name, jid, str(exc)) from exc
        logger.info("Slack message sent", jid=jid, length=len(text))

    async def set_typing(self, jid: str, is_typing: bool) -> None:  # noqa: ARG002
        """Slack doesn't have a bot typing indicator API, so this is a no-op."""

    def is_connected(self) -> bool:
        return self._connected and self._handler_task is not None and not self._handler_task.done()

    def owns_jid(self, jid: str) -> bool:
        return jid.startswith(JID_PREFIX)

    async def disconnect(self) -> None:
        self._shutting_down = True
        self._connected = False
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            self._reconnect_task = None
        if self._handler:
            with contextlib.suppress(Exception):
                await self._handler.close_async()
        if self._handler_task and not self._handler_task.done():
            self._handler_task.cancel()
        self._app = None
        logger.info("Slack channel disconnected")

    # ------------------------------------------------------------------
    # Internal: reconnect on unexpected task exit
    # ------------------------------------------------------------------

    def _on_handler_done(self, task: asyncio.Task[None]) -> None:
        """Called when the Socket Mode handler task exits for any reason."""
        if not self._connected or self._shutting_down:
            return
        exc = task.exception() if not task.cancelled() else None
        logger.warning(
            "Slack Socket Mode task exited unexpectedly — scheduling reconnect",
            exc=str(exc) if exc else "cancelled",
        )
        self._connected = False
        coro = self._reconnect_with_backoff()
        try:
            self._reconnect_task = task.get_loop().create_task(coro, name="slack-reconnect")
        except RuntimeError:
            coro.close()
            logger.debug("Cannot schedule Slack reconnect — event loop closing")

    async def _reconnect_with_backoff(self, delay: float = 5.0) -> None:
        """Reconnect with exponential backoff, capped at 5 minutes."""
        while not self._shutting_down:
            await asyncio.sleep(delay)
            if self._connected or self._shutting_down:
                return
            logger.info("Slack attempting reconnect", delay=delay)
            try:
                self._handler = None
                self._handler_task = None
                await self.connect()
                self._reconnect_task = None
                return
            except Exception as exc:
                logger.warning("Slack reconnect failed, will retry", delay=delay, exc=str(exc))
                self._connected = False
                delay = min(delay * 2, 300)

    # ------------------------------------------------------------------
    # Internal: Slack event handlers
    # ------------------------------------------------------------------

    def _register_handlers(self) -> None:
        assert self._app is not None

        @self._app.event("message")
        async def _handle_message(event: dict[str, Any]) -> None:
            await self._on_slack_message(event)

    async def _on_slack_message(self, event: dict[str, Any]) -> None:
        """Normalise a Slack DM event and hand it to the router callbacks."""
        if event.get("channel_type") != "im":
            return
        # Skip bot messages, edits, and other subtypes
        if event.get("subtype") or event.get("bot_id"):
            return

        user_id = event.get("user")
        ts = event.get("ts", "")
        if not user_id or not ts:
            return

        jid = _jid(user_id)
        timestamp = datetime.fromtimestamp(float(ts), tz=UTC).isoformat()
        sender_name = await self._resolve_user_name(user_id)

        await self._on_chat_metadata(jid, timestamp, sender_name)

        msg = NewMessage(
            id=ts,
            chat_jid=jid,
            sender=user_id,
            sender_name=sender_name,
            content=event.get("text") or "",
            timestamp=timestamp,
            is_from_me=False,
        )
        logger.info("Slack inbound message", jid=jid, sender=sender_name)
        await self._on_message(jid, msg)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _resolve_user_name(self, user_id: str) -> str:
        """Look up a Slack user's display name, falling back to user ID.

        Lookup failures are not cached, so the next message retries.
        """
        cached = self._user_name_cache.get(user_id)
        if cached is not None:
            return cached
        if not self._app:
            return user_id
        try:
            resp = await self._app.client.users_info(user=user_id)
        except Exception as exc:
            logger.debug("Failed to fetch Slack user info", user=user_id, err=str(exc))
            return user_id
        user = resp.get("user") or {}
        profile = user.get("profile") or {}
        name = (
            profile.get("display_name")
            or user.get("real_name")
            or profile.get("real_name")
            or user.get("name")
            or user_id
        )
        self._user_name_cache.put(user_id, name)
        return name
