"""Container runner — spawns agent execution in an isolated container.

Submodules:
  _serialization  — ContainerInput/Output JSON conversion
  _mounts         — volume mount list and CLI arg construction
  _process        — stream reading, forced stop, output parsing, exit classification
  _sandbox        — the Sandbox resource (spawn, cancel, teardown) and its naming
  _logging        — run log file writing
  _snapshots      — task/group snapshot helpers
  _orchestrator   — run_container_agent entry point
"""

from nanoclaw.container_runner._orchestrator import (
    resolve_container_timeout,
    run_container_agent,
)
from nanoclaw.container_runner._process import OUTPUT_END_MARKER, OUTPUT_START_MARKER
from nanoclaw.container_runner._sandbox import (
    CLOSE_SENTINEL,
    Sandbox,
    parse_sandbox_epoch,
    sandbox_name,
)
from nanoclaw.container_runner._snapshots import write_groups_snapshot, write_tasks_snapshot

__all__ = [
    "CLOSE_SENTINEL",
    "OUTPUT_END_MARKER",
    "OUTPUT_START_MARKER",
    "Sandbox",
    "parse_sandbox_epoch",
    "resolve_container_timeout",
    "run_container_agent",
    "sandbox_name",
    "write_groups_snapshot",
    "write_tasks_snapshot",
]
