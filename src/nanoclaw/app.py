"""Host application — owns runtime state and wires the subsystems together.

Inbound messages flow channel → ChannelRouter → GroupQueue →
``process_group_messages`` → SessionManager. Outbound text (interim
mailbox envelopes, final results, error notices) goes back through the
router to whichever channel owns the chat.
"""

from __future__ import annotations

import asyncio
import os
import signal
from collections.abc import Awaitable, Callable

from nanoclaw.config import get_settings
from nanoclaw.db import (
    close_database,
    get_agent_cursors,
    get_all_registered_groups,
    get_all_sessions,
    get_messages_since,
    init_database,
    set_agent_cursors,
    set_registered_group,
)
from nanoclaw.group_queue import GroupQueue
from nanoclaw.ipc import sweep_orphaned_mailboxes
from nanoclaw.liveness import HeartbeatWriter
from nanoclaw.logger import logger
from nanoclaw.router import ChannelRouter, format_messages
from nanoclaw.runtime import get_runtime
from nanoclaw.session_manager import InvocationActiveError, SessionManager
from nanoclaw.types import ContainerInput, ContainerOutput, NewMessage, RegisteredGroup

_SHUTDOWN_HARD_LIMIT = 12.0  # seconds before a hung shutdown force-exits


def error_notice(output: ContainerOutput) -> str:
    return f"⚠️ Agent error: {output.error or 'unknown error'}"


class NanoclawApp:
    """Main application class — owns all runtime state and wires subsystems."""

    def __init__(self) -> None:
        self.sessions: dict[str, str] = {}
        self.registered_groups: dict[str, RegisteredGroup] = {}
        self.last_agent_timestamp: dict[str, str] = {}
        self.session_manager = SessionManager(sessions=self.sessions)
        self.queue = GroupQueue(self.session_manager)
        self.router = ChannelRouter(self.registered_groups, on_inbound=self._on_inbound)
        self.heartbeat = HeartbeatWriter()
        self._shutting_down = False
        self._stopped = asyncio.Event()

    # ------------------------------------------------------------------
    # State persistence
    # ------------------------------------------------------------------

    async def _load_state(self) -> None:
        """Load persisted state from the database."""
        cursors = await get_agent_cursors()
        # Mutate in place; the router and session manager hold references.
        self.last_agent_timestamp.clear()
        self.last_agent_timestamp.update(cursors)
        self.sessions.clear()
        self.sessions.update(await get_all_sessions())
        self.registered_groups.clear()
        self.registered_groups.update(await get_all_registered_groups())
        logger.info("State loaded", group_count=len(self.registered_groups))

    async def _save_state(self) -> None:
        await set_agent_cursors(self.last_agent_timestamp)

    # ------------------------------------------------------------------
    # Group management
    # ------------------------------------------------------------------

    async def register_group(self, jid: str, group: RegisteredGroup) -> None:
        """Register a chat and persist it. Raises ValueError on a folder clash."""
        await set_registered_group(jid, group)
        self.registered_groups[jid] = group
        (get_settings().groups_dir / group.folder / "logs").mkdir(parents=True, exist_ok=True)
        logger.info("Group registered", jid=jid, name=group.name, folder=group.folder)

    def _jid_for_folder(self, folder: str) -> str | None:
        return next(
            (jid for jid, g in self.registered_groups.items() if g.folder == folder),
            None,
        )

    # ------------------------------------------------------------------
    # Message processing
    # ------------------------------------------------------------------

    async def _on_inbound(self, jid: str, msg: NewMessage) -> None:  # noqa: ARG002
        self.queue.enqueue_message_check(jid)

    def _needs_trigger(self, group: RegisteredGroup) -> bool:
        is_main = group.folder == get_settings().groups.main_folder
        return not is_main and group.requires_trigger

    async def process_group_messages(self, chat_jid: str) -> bool:
        """Process all pending messages for a chat. Called by GroupQueue.

        Returns False when the turn failed before anything reached the
        user, so the queue retries it with backoff.
        """
        group = self.registered_groups.get(chat_jid)
        if not group:
            return True

        missed = await get_messages_since(chat_jid, self.last_agent_timestamp.get(chat_jid, ""))
        if not missed:
            return True

        if self._needs_trigger(group):
            pattern = get_settings().trigger_pattern
            if not any(pattern.search(m.content.strip()) for m in missed):
                logger.debug("No trigger in pending messages", group=group.name)
                return True

        prompt = format_messages(missed)

        # Advance cursor; keep the old one for rollback on error
        previous_cursor = self.last_agent_timestamp.get(chat_jid, "")
        self.last_agent_timestamp[chat_jid] = missed[-1].timestamp
        await self._save_state()

        logger.info(
            "Processing messages",
            group=group.name,
            message_count=len(missed),
            preview=missed[-1].content[:200],
        )

        output_sent = False

        async def on_incremental(text: str) -> None:
            nonlocal output_sent
            if await self.router.send(chat_jid, text):
                output_sent = True

        await self.router.set_typing(chat_jid, True)
        try:
            output = await self._run_agent(group, prompt, chat_jid, on_incremental)
        except InvocationActiveError:
            logger.warning("Invocation already active, deferring", group=group.name)
            await self._rollback_cursor(chat_jid, previous_cursor)
            return False
        finally:
            await self.router.set_typing(chat_jid, False)

        if output.status == "success":
            if output.result:
                await self.router.send(chat_jid, output.result)
            return True

        if output.error == "cancelled":
            logger.info("Turn cancelled, messages will be reprocessed", group=group.name)
            await self._rollback_cursor(chat_jid, previous_cursor)
            return True

        await self.router.send(chat_jid, error_notice(output))
        if output_sent:
            logger.warning(
                "Agent error after output was sent, skipping cursor rollback",
                group=group.name,
            )
            return True

        await self._rollback_cursor(chat_jid, previous_cursor)
        logger.warning("Agent error, rolled back message cursor for retry", group=group.name)
        return False

    async def _rollback_cursor(self, chat_jid: str, previous: str) -> None:
        self.last_agent_timestamp[chat_jid] = previous
        await self._save_state()

    async def _run_agent(
        self,
        group: RegisteredGroup,
        prompt: str,
        chat_jid: str,
        on_incremental: Callable[[str], Awaitable[None]],
    ) -> ContainerOutput:
        input_data = ContainerInput(
            prompt=prompt,
            group_folder=group.folder,
            chat_jid=chat_jid,
            is_main=group.folder == get_settings().groups.main_folder,
            session_id=self.sessions.get(group.folder),
        )
        return await self.session_manager.run_invocation(
            group,
            input_data,
            lambda proc, name: self.queue.register_process(chat_jid, proc, name, group.folder),
            on_incremental,
        )

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def _ensure_container_system_running(self) -> None:
        """Verify the container runtime is up and stop containers left by a previous host."""
        runtime = get_runtime()
        runtime.ensure_running()

        orphans = runtime.list_running_containers(get_settings().container.name_prefix)
        stopped = [name for name in orphans if runtime.stop_container(name)]
        if stopped:
            logger.info("Stopped orphaned containers", count=len(stopped), names=stopped)

    async def _sweep_mailboxes(self) -> None:
        """Deliver envelopes left behind by turns a host crash interrupted."""

        async def deliver(folder: str, text: str) -> None:
            jid = self._jid_for_folder(folder)
            if jid is None:
                logger.warning("Dropping envelope for unregistered folder", folder=folder)
                return
            await self.router.send(jid, text)

        await sweep_orphaned_mailboxes(deliver)

    async def _recover_pending_messages(self) -> None:
        """Re-enqueue chats with messages past their cursor."""
        for chat_jid, group in self.registered_groups.items():
            cursor = self.last_agent_timestamp.get(chat_jid, "")
            pending = await get_messages_since(chat_jid, cursor)
            if pending:
                logger.info(
                    "Recovery: found unprocessed messages",
                    group=group.name,
                    pending_count=len(pending),
                )
                self.queue.enqueue_message_check(chat_jid)

    def _build_channels(self) -> None:
        s = get_settings()
        if s.slack.enabled:
            from nanoclaw.channels import SlackChannel

            assert s.slack.bot_token is not None and s.slack.app_token is not None
            self.router.add_channel(
                SlackChannel(
                    bot_token=s.slack.bot_token.get_secret_value(),
                    app_token=s.slack.app_token.get_secret_value(),
                    on_message=self.router.on_message,
                    on_chat_metadata=self.router.on_chat_metadata,
                )
            )
        if s.whatsapp.enabled:
            from nanoclaw.channels import WhatsAppChannel

            self.router.add_channel(
                WhatsAppChannel(
                    on_message=self.router.on_message,
                    on_chat_metadata=self.router.on_chat_metadata,
                )
            )
        if not self.router.channels:
            logger.warning("No channels configured; set Slack tokens or enable WhatsApp")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _shutdown(self, sig_name: str) -> None:
        """Graceful shutdown handler. Second signal force-exits."""
        if self._shutting_down:
            logger.info("Force shutdown")
            os._exit(1)
        self._shutting_down = True
        logger.info("Shutdown signal received", signal=sig_name)

        loop = asyncio.get_running_loop()
        loop.call_later(_SHUTDOWN_HARD_LIMIT, lambda: os._exit(1))

        try:
            await self.queue.shutdown()
            await self.heartbeat.stop()
            await self.router.disconnect_all()
        finally:
            self._stopped.set()

    async def run(self) -> None:
        """Main entry point — startup sequence, then wait for a shutdown signal."""
        self._ensure_container_system_running()
        await init_database()
        logger.info("Database initialized")
        try:
            await self._load_state()

            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(
                    sig,
                    lambda s=sig: asyncio.ensure_future(self._shutdown(s.name)),
                )

            if not self.registered_groups:
                logger.warning("No registered groups; add one with `nanoclaw register`")

            self._build_channels()
            await self.router.connect_all()
            await self._sweep_mailboxes()

            self.queue.set_process_messages_fn(self.process_group_messages)
            self.heartbeat.start()
            logger.info(f"NanoClaw running (trigger: @{get_settings().agent.name})")

            await self._recover_pending_messages()
            await self._stopped.wait()
        finally:
            await close_database()
