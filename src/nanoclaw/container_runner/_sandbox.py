"""Sandbox — one ephemeral agent container, owned for the length of a turn.

Use as an async context manager; the container is stopped on every exit
path, including exceptions and task cancellation::

    async with Sandbox(group, input_data) as sandbox:
        exit_info = await sandbox.wait(timeout)

Container names embed their creation time (``nanoclaw-<epoch-ms>``) so the
watchdog's reaper can age them from a listing alone.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import re
import time
from typing import Literal

from nanoclaw.config import get_settings
from nanoclaw.container_runner._mounts import _build_container_args, _build_volume_mounts
from nanoclaw.container_runner._process import (
    StreamCapture,
    _ExitInfo,
    read_stderr,
    read_stdout,
    stop_container_async,
)
from nanoclaw.container_runner._serialization import _input_to_dict
from nanoclaw.logger import logger
from nanoclaw.runtime import get_runtime
from nanoclaw.types import ContainerInput, RegisteredGroup, VolumeMount

CLOSE_SENTINEL = b"\n_close\n"

_EPOCH_DIGITS = 13


def sandbox_name(now_ms: int | None = None) -> str:
    """Container name for a new sandbox: ``<prefix><13-digit epoch ms>``."""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{get_settings().container.name_prefix}{now_ms}"


def parse_sandbox_epoch(name: str, prefix: str | None = None) -> int | None:
    """Recover the creation epoch (ms) from a sandbox name.

    Returns None for names that don't follow the ``<prefix><13 digits>``
    convention exactly.
    """
    if prefix is None:
        prefix = get_settings().container.name_prefix
    match = re.fullmatch(rf"{re.escape(prefix)}(\d{{{_EPOCH_DIGITS}}})", name)
    if match is None:
        return None
    return int(match.group(1))


SandboxStatus = Literal["pending", "running", "stopping", "exited"]


class Sandbox:
    """A single container run: spawn, stream, cancel, tear down."""

    def __init__(
        self,
        group: RegisteredGroup,
        input_data: ContainerInput,
        name: str | None = None,
        *,
        close_grace: float | None = None,
    ) -> None:
        s = get_settings()
        self.group = group
        self.input_data = input_data
        self.folder = input_data.group_folder
        self.name = name or sandbox_name()
        self.status: SandboxStatus = "pending"
        self.process: asyncio.subprocess.Process | None = None
        self.cancelled = False
        self.timed_out = False
        self.mounts: list[VolumeMount] = []
        self.container_args: list[str] = []
        self._grace = close_grace if close_grace is not None else s.container.close_grace_seconds
        self._max_output = s.container.max_output_size
        self._stdout = StreamCapture()
        self._stderr = StreamCapture()
        self._readers: list[asyncio.Task[None]] = []
        self._shutdown_task: asyncio.Task[None] | None = None
        self._started_at = 0.0

    async def __aenter__(self) -> Sandbox:
        try:
            await self.start()
        except BaseException:
            await self.close()
            raise
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> asyncio.subprocess.Process:
        """Spawn the container and write the input line to its stdin.

        Raises OSError if the runtime CLI cannot be executed.
        """
        self.mounts = _build_volume_mounts(self.group, self.input_data.is_main)
        self.container_args = _build_container_args(self.mounts, self.name)
        logger.info(
            "Spawning container agent",
            group=self.group.name,
            container=self.name,
            mount_count=len(self.mounts),
            is_main=self.input_data.is_main,
        )
        self._started_at = time.monotonic()
        proc = await asyncio.create_subprocess_exec(
            get_runtime().cli,
            *self.container_args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        self.process = proc
        self.status = "running"

        assert proc.stdout is not None
        assert proc.stderr is not None
        self._readers = [
            asyncio.create_task(
                read_stdout(proc.stdout, self._max_output, self.group.name, self._stdout)
            ),
            asyncio.create_task(
                read_stderr(proc.stderr, self._max_output, self.group.name, self._stderr)
            ),
        ]

        assert proc.stdin is not None
        proc.stdin.write(json.dumps(_input_to_dict(self.input_data)).encode() + b"\n")
        await proc.stdin.drain()
        return proc

    async def wait(self, timeout: float) -> _ExitInfo:
        """Wait for the container to exit, cancelling it after *timeout* seconds."""
        proc = self._require_process()
        loop = asyncio.get_running_loop()

        def on_timeout() -> None:
            self.timed_out = True
            logger.error(
                "Container timeout, stopping",
                group=self.group.name,
                container=self.name,
            )
            self._begin_shutdown()

        timeout_handle = loop.call_later(timeout, on_timeout)
        try:
            await asyncio.gather(*self._readers)
            exit_code = await proc.wait()
        finally:
            timeout_handle.cancel()
        self.status = "exited"

        return _ExitInfo(
            exit_code=exit_code,
            stdout=self._stdout.text,
            stderr=self._stderr.text,
            stdout_truncated=self._stdout.truncated,
            stderr_truncated=self._stderr.truncated,
            timed_out=self.timed_out,
            duration_ms=(time.monotonic() - self._started_at) * 1000,
        )

    async def cancel(self) -> None:
        """Ask the agent to wind down, then force-stop the container.

        Writes the close sentinel to stdin and closes it; after the grace
        period the container is stopped by name through the runtime CLI.
        Both steps run even if the other fails.
        """
        if self.process is None:
            self.cancelled = True
            return
        self.cancelled = True
        await self._begin_shutdown()

    async def close(self) -> None:
        """Tear down: stop the container if it is still running and reap readers."""
        proc = self.process
        if proc is None:
            return
        if proc.returncode is None:
            await self._begin_shutdown()
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._grace)
            except TimeoutError:
                logger.warning("Container did not exit after stop, killing", container=self.name)
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
        elif proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()
        for reader in self._readers:
            if not reader.done():
                reader.cancel()
        for reader in self._readers:
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        if self._shutdown_task is not None and not self._shutdown_task.done():
            await self._shutdown_task
        self.status = "exited"

    # -- internals -----------------------------------------------------------

    def _require_process(self) -> asyncio.subprocess.Process:
        if self.process is None:
            raise RuntimeError(f"Sandbox {self.name} has not been started")
        return self.process

    def _begin_shutdown(self) -> asyncio.Task[None]:
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.create_task(
                self._shutdown(), name=f"sandbox-stop-{self.name}"
            )
        return self._shutdown_task

    async def _shutdown(self) -> None:
        proc = self._require_process()
        self.status = "stopping"

        try:
            if proc.stdin is not None and not proc.stdin.is_closing():
                proc.stdin.write(CLOSE_SENTINEL)
                await proc.stdin.drain()
                proc.stdin.close()
        except (OSError, RuntimeError) as exc:
            # BrokenPipe / ConnectionReset when the agent already exited
            logger.warning("Failed to write close sentinel", container=self.name, err=str(exc))

        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(proc.wait(), timeout=self._grace)

        await stop_container_async(self.name)
