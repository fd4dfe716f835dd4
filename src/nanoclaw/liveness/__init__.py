"""Host liveness: heartbeat writer, sandbox reaper and the external watchdog tick."""

from nanoclaw.liveness.heartbeat import HeartbeatWriter, read_heartbeat, write_heartbeat
from nanoclaw.liveness.monitor import check_heartbeat, kill_host, run_watchdog_tick
from nanoclaw.liveness.reaper import reap_stale_sandboxes

__all__ = [
    "HeartbeatWriter",
    "check_heartbeat",
    "kill_host",
    "read_heartbeat",
    "reap_stale_sandboxes",
    "run_watchdog_tick",
    "write_heartbeat",
]
