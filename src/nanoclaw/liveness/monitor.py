"""External watchdog tick — reap orphaned sandboxes, then kill a stalled host.

Runs as its own short-lived process on a timer (launchd, systemd, cron).
The watchdog never restarts the host; the supervisor that keeps it alive
does that after the kill.
"""

from __future__ import annotations

import subprocess

from nanoclaw.config import get_settings
from nanoclaw.liveness.heartbeat import now_ms as current_ms
from nanoclaw.liveness.heartbeat import read_heartbeat
from nanoclaw.liveness.reaper import reap_stale_sandboxes
from nanoclaw.logger import logger


def kill_host() -> bool:
    """``pkill -f`` the host process. Returns True if anything was signalled."""
    pattern = get_settings().watchdog.host_pattern
    try:
        result = subprocess.run(["pkill", "-f", pattern], capture_output=True, check=False)
    except OSError as exc:
        logger.error("Failed to run pkill", pattern=pattern, err=str(exc))
        return False
    # pkill exits 1 when nothing matched
    return result.returncode == 0


def check_heartbeat(now_ms: int) -> bool:
    """Kill the host if its heartbeat is stale. Returns True if a host process was signalled."""
    s = get_settings()
    path = s.heartbeat_path
    if not path.exists():
        logger.info("No heartbeat file found, host may not be running", path=str(path))
        return False

    last_beat = read_heartbeat(path)
    if last_beat is None:
        logger.info("Heartbeat file empty", path=str(path))
        return False

    age_ms = now_ms - last_beat
    if age_ms <= s.watchdog.stale_after_seconds * 1000:
        logger.debug("Heartbeat fresh", age_seconds=age_ms // 1000)
        return False

    logger.warning("Stale heartbeat, killing host process", age_seconds=age_ms // 1000)
    if not kill_host():
        logger.warning(
            "Stale heartbeat but no host process matched",
            pattern=s.watchdog.host_pattern,
        )
        return False
    logger.info("Host killed, supervisor should restart it")
    return True


def run_watchdog_tick(now_ms: int | None = None) -> int:
    """One watchdog pass. Always returns exit code 0."""
    if now_ms is None:
        now_ms = current_ms()
    stopped = reap_stale_sandboxes(now_ms)
    if stopped:
        logger.info("Reaped stale containers", count=len(stopped), names=stopped)
    check_heartbeat(now_ms)
    return 0
