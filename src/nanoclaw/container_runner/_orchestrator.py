"""Main entry point — spawns the container agent, waits for it, returns the result."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from nanoclaw.config import get_settings
from nanoclaw.container_runner._logging import _write_run_log
from nanoclaw.container_runner._process import _classify_exit, _parse_final_output
from nanoclaw.container_runner._sandbox import Sandbox
from nanoclaw.logger import logger
from nanoclaw.types import ContainerInput, ContainerOutput, RegisteredGroup

OnLaunch = Callable[[asyncio.subprocess.Process, str], Any]

# Grace added on top of the idle timeout so an idle agent can wind down on
# its own before the hard timeout fires.
_IDLE_GRACE_SECONDS = 30.0


def resolve_container_timeout() -> float:
    """Return the hard timeout for one run, in seconds."""
    s = get_settings()
    return max(s.container_timeout, s.idle_timeout + _IDLE_GRACE_SECONDS)


async def run_container_agent(
    group: RegisteredGroup,
    input_data: ContainerInput,
    on_launch: OnLaunch,
    *,
    on_sandbox: Callable[[Sandbox], None] | None = None,
    interim_count: Callable[[], int] = lambda: 0,
) -> ContainerOutput:
    """Run one agent turn in a fresh container.

    *on_launch* fires once the process is spawned. *on_sandbox* receives
    the live Sandbox so callers can cancel it. *interim_count* reports how
    many interim messages were delivered so far; a timed-out run that
    already produced output counts as an idle cleanup, not a failure.

    Raises OSError if the container cannot be spawned.
    """
    s = get_settings()
    timeout = resolve_container_timeout()

    async with Sandbox(group, input_data) as sandbox:
        if on_sandbox is not None:
            on_sandbox(sandbox)
        assert sandbox.process is not None
        on_launch(sandbox.process, sandbox.name)
        exit_info = await sandbox.wait(timeout)

    count = interim_count()
    try:
        _write_run_log(
            logs_dir=s.groups_dir / group.folder / "logs",
            group_name=group.name,
            container_name=sandbox.name,
            input_data=input_data,
            container_args=sandbox.container_args,
            mounts=sandbox.mounts,
            exit_info=exit_info,
            interim_count=count,
            cancelled=sandbox.cancelled,
        )
    except OSError as exc:
        logger.warning("Failed to write container run log", group=group.name, err=str(exc))

    if sandbox.cancelled:
        logger.info("Container run cancelled", group=group.name, container=sandbox.name)
        return ContainerOutput(status="error", result=None, error="cancelled")

    final = _parse_final_output(exit_info.stdout, sandbox.name)
    return _classify_exit(
        exit_info,
        final,
        had_interim=count > 0,
        group_name=group.name,
        container_name=sandbox.name,
        config_timeout=timeout,
    )
