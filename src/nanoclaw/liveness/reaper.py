"""Orphaned sandbox reaper — stops containers older than the maximum turn length.

Age comes from the epoch embedded in the container name, so the reaper
needs nothing but a container listing. It runs from the watchdog process
whether or not the host is alive.
"""

from __future__ import annotations

from nanoclaw.config import get_settings
from nanoclaw.container_runner import parse_sandbox_epoch
from nanoclaw.logger import logger
from nanoclaw.runtime import RuntimeProvider, get_runtime


def reap_stale_sandboxes(
    now_ms: int,
    runtime: RuntimeProvider | None = None,
    max_age_ms: int | None = None,
) -> list[str]:
    """Stop running sandboxes whose age exceeds *max_age_ms*.

    A sandbox exactly at the limit is kept. Names that don't carry a
    13-digit epoch are skipped. Returns the names that were stopped.
    """
    s = get_settings()
    if runtime is None:
        runtime = get_runtime()
    if max_age_ms is None:
        max_age_ms = s.max_sandbox_age_ms
    prefix = s.container.name_prefix

    stopped: list[str] = []
    for name in runtime.list_running_containers(prefix):
        epoch = parse_sandbox_epoch(name, prefix)
        if epoch is None:
            logger.debug("Skipping container with unrecognised name", name=name)
            continue
        age_ms = now_ms - epoch
        if age_ms <= max_age_ms:
            continue
        logger.info("Stopping stale container", name=name, age_seconds=age_ms // 1000)
        if runtime.stop_container(name):
            stopped.append(name)
    return stopped
