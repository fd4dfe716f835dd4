"""Process management — stream reading, forced stop, output parsing, exit classification.

Provides:
  - read_stdout() — accumulates container stdout with truncation
  - read_stderr() — reads container stderr, logs lines, accumulates with truncation
  - stop_container_async() — force-stops a container by name via the runtime CLI
  - _parse_final_output() — extracts the last marker-delimited result from stdout
  - _classify_exit() — classify exit state into final ContainerOutput
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass

from nanoclaw.container_runner._serialization import _parse_container_output
from nanoclaw.logger import logger
from nanoclaw.runtime import get_runtime
from nanoclaw.types import ContainerOutput

OUTPUT_START_MARKER = "---NANOCLAW_OUTPUT_START---"
OUTPUT_END_MARKER = "---NANOCLAW_OUTPUT_END---"

_STOP_TIMEOUT = 15.0  # seconds to wait for `<cli> stop` to return


@dataclass
class StreamCapture:
    text: str = ""
    truncated: bool = False


async def read_stdout(
    stream: asyncio.StreamReader,
    max_output_size: int,
    group_name: str,
    capture: StreamCapture,
) -> None:
    """Accumulate container stdout into *capture*, truncating at *max_output_size*."""
    while True:
        chunk = await stream.read(8192)
        if not chunk:
            break
        if capture.truncated:
            continue
        text = chunk.decode(errors="replace")
        remaining = max_output_size - len(capture.text)
        if len(text) > remaining:
            capture.text += text[:remaining]
            capture.truncated = True
            logger.warning("Container stdout truncated", group=group_name, size=len(capture.text))
        else:
            capture.text += text


async def read_stderr(
    stream: asyncio.StreamReader,
    max_output_size: int,
    group_name: str,
    capture: StreamCapture,
) -> None:
    """Read container stderr, log lines, and accumulate with truncation."""
    while True:
        chunk = await stream.read(8192)
        if not chunk:
            break
        text = chunk.decode(errors="replace")

        for line in text.strip().splitlines():
            if line:
                logger.debug(line, container=group_name)

        if not capture.truncated:
            remaining = max_output_size - len(capture.text)
            if len(text) > remaining:
                capture.text += text[:remaining]
                capture.truncated = True
                logger.warning(
                    "Container stderr truncated",
                    group=group_name,
                    size=len(capture.text),
                )
            else:
                capture.text += text


async def stop_container_async(container_name: str) -> None:
    """Force-stop a container by name. Failures are logged, never raised."""
    try:
        proc = await asyncio.create_subprocess_exec(
            get_runtime().cli,
            "stop",
            container_name,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        code = await asyncio.wait_for(proc.wait(), timeout=_STOP_TIMEOUT)
    except TimeoutError:
        logger.warning("Container stop timed out", container=container_name)
        return
    except OSError as exc:
        # OSError covers FileNotFoundError (CLI missing) and other
        # process-spawn failures.
        logger.warning("Container stop failed", container=container_name, err=str(exc))
        return
    if code != 0:
        # Non-zero usually means the container already exited (--rm)
        logger.debug("Container stop returned non-zero", container=container_name, code=code)


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------


def _parse_final_output(stdout: str, container_name: str) -> ContainerOutput | None:
    """Parse the last marker pair from accumulated stdout.

    Returns None when stdout holds no complete marker pair.
    """
    end_idx = stdout.rfind(OUTPUT_END_MARKER)
    if end_idx == -1:
        return None
    start_idx = stdout.rfind(OUTPUT_START_MARKER, 0, end_idx)
    if start_idx == -1:
        return None
    json_str = stdout[start_idx + len(OUTPUT_START_MARKER) : end_idx].strip()

    try:
        return _parse_container_output(json_str)
    except json.JSONDecodeError as exc:
        # Truncate long output to avoid flooding logs
        preview = json_str[:200] + "..." if len(json_str) > 200 else json_str
        logger.error(
            "Invalid JSON in container output",
            container=container_name,
            json_error=str(exc),
            preview=preview,
        )
        return ContainerOutput(
            status="error",
            result=None,
            error=f"Invalid JSON in container output: {exc}",
        )
    except (KeyError, ValueError, TypeError, AttributeError) as exc:
        logger.error(
            "Malformed container output",
            container=container_name,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return ContainerOutput(
            status="error",
            result=None,
            error=f"Malformed container output: {exc}",
        )


# ---------------------------------------------------------------------------
# Container exit helpers
# ---------------------------------------------------------------------------


@dataclass
class _ExitInfo:
    """Post-exit state from a container run."""

    exit_code: int | None
    stdout: str
    stderr: str
    stdout_truncated: bool
    stderr_truncated: bool
    timed_out: bool
    duration_ms: float


def _classify_exit(
    exit_info: _ExitInfo,
    final: ContainerOutput | None,
    had_interim: bool,
    group_name: str,
    container_name: str,
    config_timeout: float,
) -> ContainerOutput:
    """Classify exit status and parsed output into a final ContainerOutput.

    Handles four cases:
    - Timeout with output → idle cleanup (success)
    - Timeout with no output → real timeout (error)
    - Non-zero exit → error
    - Clean exit → parsed result or empty success
    """
    if exit_info.timed_out:
        if final is not None or had_interim:
            # Had output before timeout: idle cleanup, not a real error
            logger.info(
                "Container timed out after output (idle cleanup)",
                group=group_name,
                container=container_name,
                duration_ms=exit_info.duration_ms,
            )
            if final is not None and final.status == "success":
                return final
            return ContainerOutput(
                status="success",
                result=None,
                new_session_id=final.new_session_id if final else None,
            )

        logger.error(
            "Container timed out with no output",
            group=group_name,
            container=container_name,
            duration_ms=exit_info.duration_ms,
        )
        return ContainerOutput(
            status="error",
            result=None,
            error=f"Container timed out after {config_timeout:.0f}s",
        )

    if exit_info.exit_code != 0:
        logger.error(
            "Container exited with error",
            group=group_name,
            code=exit_info.exit_code,
            duration_ms=exit_info.duration_ms,
        )
        if final is not None and final.status == "error" and final.error:
            return final
        return ContainerOutput(
            status="error",
            result=None,
            new_session_id=final.new_session_id if final else None,
            error=f"Container exited with code {exit_info.exit_code}: {exit_info.stderr[-200:]}",
        )

    if final is not None:
        logger.info(
            "Container completed",
            group=group_name,
            duration_ms=exit_info.duration_ms,
            status=final.status,
            new_session_id=final.new_session_id,
        )
        return final

    # Container exited successfully but produced no marker pair
    logger.warning(
        "Container exited successfully but produced no output",
        group=group_name,
        duration_ms=exit_info.duration_ms,
    )
    return ContainerOutput(status="success", result=None)
