"""Run log file writing."""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path

from nanoclaw.container_runner._process import _ExitInfo
from nanoclaw.container_runner._serialization import _input_to_dict
from nanoclaw.types import ContainerInput, VolumeMount


def _write_run_log(
    *,
    logs_dir: Path,
    group_name: str,
    container_name: str,
    input_data: ContainerInput,
    container_args: list[str],
    mounts: list[VolumeMount],
    exit_info: _ExitInfo,
    interim_count: int,
    cancelled: bool,
) -> Path:
    """Write a timestamped log file for a container run."""
    logs_dir.mkdir(parents=True, exist_ok=True)
    ts = datetime.now(UTC).isoformat().replace(":", "-").replace(".", "-")
    log_file = logs_dir / f"container-{ts}.log"

    header = "=== Container Run Log ==="
    if exit_info.timed_out:
        header = "=== Container Run Log (TIMEOUT) ==="
    elif cancelled:
        header = "=== Container Run Log (CANCELLED) ==="

    lines = [
        header,
        f"Timestamp: {datetime.now(UTC).isoformat()}",
        f"Group: {group_name}",
        f"Container: {container_name}",
        f"IsMain: {input_data.is_main}",
        f"Duration: {exit_info.duration_ms:.0f}ms",
        f"Exit Code: {exit_info.exit_code}",
        f"Timed Out: {exit_info.timed_out}",
        f"Interim Messages: {interim_count}",
        f"Stdout Truncated: {exit_info.stdout_truncated}",
        f"Stderr Truncated: {exit_info.stderr_truncated}",
        "",
    ]

    is_verbose = os.environ.get("LOG_LEVEL", "").lower() in ("debug", "trace")
    is_error = exit_info.exit_code != 0 or exit_info.timed_out

    if is_verbose or is_error:
        lines.extend(
            [
                "=== Input ===",
                json.dumps(_input_to_dict(input_data), indent=2),
                "",
                "=== Container Args ===",
                " ".join(container_args),
                "",
                "=== Mounts ===",
                "\n".join(
                    f"{m.host_path} -> {m.container_path}{' (ro)' if m.readonly else ''}"
                    for m in mounts
                ),
                "",
                f"=== Stderr{' (TRUNCATED)' if exit_info.stderr_truncated else ''} ===",
                exit_info.stderr,
                "",
                f"=== Stdout{' (TRUNCATED)' if exit_info.stdout_truncated else ''} ===",
                exit_info.stdout,
            ]
        )
    else:
        lines.extend(
            [
                "=== Input Summary ===",
                f"Prompt length: {len(input_data.prompt)} chars",
                f"Session ID: {input_data.session_id or 'new'}",
                "",
                "=== Mounts ===",
                "\n".join(f"{m.container_path}{' (ro)' if m.readonly else ''}" for m in mounts),
                "",
            ]
        )

    log_file.write_text("\n".join(lines))
    return log_file
