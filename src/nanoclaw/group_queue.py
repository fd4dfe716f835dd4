"""Per-chat turn scheduling under a global container limit.

A chat has at most one turn in flight. Checks that arrive during a turn
collapse into a single follow-up turn; chats that find every container slot
taken wait in FIFO order. A failed turn is retried with exponential backoff
until ``queue.max_retries`` is exhausted, after which the next inbound
message starts the cycle again.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from nanoclaw.config import get_settings
from nanoclaw.logger import logger

if TYPE_CHECKING:
    from nanoclaw.session_manager import SessionManager

ProcessMessages = Callable[[str], Awaitable[bool]]


@dataclass
class ChatSlot:
    """Scheduling state for one chat."""

    running: bool = False
    check_pending: bool = False
    failures: int = 0
    process: asyncio.subprocess.Process | None = None
    container_name: str | None = None
    group_folder: str | None = None

    def clear_turn(self) -> None:
        self.running = False
        self.process = None
        self.container_name = None
        self.group_folder = None


class GroupQueue:
    def __init__(self, session_manager: SessionManager | None = None) -> None:
        self._slots: dict[str, ChatSlot] = {}
        self._waiting: deque[str] = deque()
        self._running = 0
        self._turns: set[asyncio.Task[None]] = set()
        self._process_messages: ProcessMessages | None = None
        self._session_manager = session_manager
        self._closed = False

    @property
    def active_count(self) -> int:
        return self._running

    def _slot(self, chat_jid: str) -> ChatSlot:
        return self._slots.setdefault(chat_jid, ChatSlot())

    def _has_capacity(self) -> bool:
        return self._running < get_settings().container.max_concurrent

    def set_process_messages_fn(self, fn: ProcessMessages) -> None:
        """Install the turn callback. It returns False to request a retry."""
        self._process_messages = fn

    def enqueue_message_check(self, chat_jid: str) -> None:
        """Ask for a turn in *chat_jid*: now, after its current turn, or when a slot frees."""
        if self._closed:
            return
        slot = self._slot(chat_jid)
        if slot.running:
            slot.check_pending = True
            logger.debug("Turn in flight, check deferred", chat_jid=chat_jid)
        elif not self._has_capacity():
            slot.check_pending = True
            if chat_jid not in self._waiting:
                self._waiting.append(chat_jid)
            logger.debug(
                "Container limit reached, chat waiting", chat_jid=chat_jid, running=self._running
            )
        else:
            self._launch(chat_jid, "message")

    def register_process(
        self,
        chat_jid: str,
        proc: asyncio.subprocess.Process | None,
        container_name: str,
        group_folder: str | None = None,
    ) -> None:
        """Record the container serving the chat's current turn."""
        slot = self._slot(chat_jid)
        slot.process = proc
        slot.container_name = container_name
        if group_folder:
            slot.group_folder = group_folder

    def is_active(self, chat_jid: str) -> bool:
        return self._slot(chat_jid).running

    async def stop_active_process(self, chat_jid: str) -> bool:
        """Cancel the chat's running turn. Returns False if nothing was running."""
        slot = self._slot(chat_jid)
        if not (slot.running and slot.group_folder) or self._session_manager is None:
            return False
        return await self._session_manager.cancel(slot.group_folder)

    def _launch(self, chat_jid: str, reason: str) -> None:
        # Claimed before the task is scheduled so a second check in the same
        # tick sees the chat as running.
        slot = self._slot(chat_jid)
        slot.running = True
        slot.check_pending = False
        self._running += 1
        turn = asyncio.ensure_future(self._turn(chat_jid, reason))
        self._turns.add(turn)
        turn.add_done_callback(self._turns.discard)

    async def _turn(self, chat_jid: str, reason: str) -> None:
        slot = self._slot(chat_jid)
        logger.debug("Turn starting", chat_jid=chat_jid, reason=reason, running=self._running)
        ok = False
        try:
            if self._process_messages is not None:
                ok = await self._process_messages(chat_jid)
            else:
                ok = True
        except Exception:
            logger.exception("Turn failed", chat_jid=chat_jid)
        finally:
            slot.clear_turn()
            self._running -= 1
        if ok:
            slot.failures = 0
        else:
            self._retry_later(chat_jid, slot)
        self._next(chat_jid)

    def _retry_later(self, chat_jid: str, slot: ChatSlot) -> None:
        queue_cfg = get_settings().queue
        slot.failures += 1
        if slot.failures > queue_cfg.max_retries:
            logger.error(
                "Giving up on chat until its next message",
                chat_jid=chat_jid,
                failures=slot.failures,
            )
            slot.failures = 0
            return

        delay = queue_cfg.base_retry_seconds * 2 ** (slot.failures - 1)
        logger.info("Turn will be retried", chat_jid=chat_jid, attempt=slot.failures, delay=delay)

        async def _after_delay() -> None:
            await asyncio.sleep(delay)
            self.enqueue_message_check(chat_jid)

        asyncio.ensure_future(_after_delay())

    def _next(self, chat_jid: str) -> None:
        """Hand the freed slot to this chat's deferred check, else the longest waiter."""
        if self._closed:
            return
        if self._slot(chat_jid).check_pending:
            self._launch(chat_jid, "deferred")
            return
        while self._waiting and self._has_capacity():
            waiter = self._waiting.popleft()
            slot = self._slot(waiter)
            if slot.check_pending and not slot.running:
                self._launch(waiter, "waited")

    async def shutdown(self) -> None:
        """Refuse new turns, cancel running sandboxes, then wait for their turns to end.

        Interrupted turns still roll back their cursors, so the caller must
        not close the database before this returns.
        """
        self._closed = True
        logger.info("Queue shutting down", running=self._running, waiting=len(self._waiting))
        if self._session_manager is not None:
            await self._session_manager.shutdown()
        if self._turns:
            await asyncio.gather(*self._turns, return_exceptions=True)
        logger.info("Queue shut down")
