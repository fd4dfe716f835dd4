"""Tests for the heartbeat, the sandbox reaper and the watchdog tick."""

from __future__ import annotations

import asyncio
import re
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from nanoclaw.config import WatchdogConfig
from nanoclaw.liveness import (
    HeartbeatWriter,
    check_heartbeat,
    kill_host,
    read_heartbeat,
    reap_stale_sandboxes,
    run_watchdog_tick,
    write_heartbeat,
)
from nanoclaw.types import ContainerInfo

NOW = 1_700_000_000_000
MAX_AGE = 3_900_000


def _running(epoch_ms: int) -> ContainerInfo:
    return ContainerInfo(name=f"nanoclaw-{epoch_ms}", status="running")


# --- heartbeat file ---


class TestHeartbeatFile:
    def test_write_then_read(self, settings):
        write_heartbeat(timestamp_ms=NOW)
        assert settings.heartbeat_path.read_text() == str(NOW)
        assert read_heartbeat() == NOW

    def test_overwrites_previous_value(self):
        write_heartbeat(timestamp_ms=1)
        write_heartbeat(timestamp_ms=2)
        assert read_heartbeat() == 2

    def test_leaves_no_tmp_file(self, settings):
        write_heartbeat(timestamp_ms=NOW)
        assert [p.name for p in settings.heartbeat_path.parent.iterdir()] == ["heartbeat"]

    def test_missing_file(self):
        assert read_heartbeat() is None

    @pytest.mark.parametrize("content", ["", "  \n", "not-a-number"])
    def test_unreadable_content(self, settings, content):
        settings.heartbeat_path.parent.mkdir(parents=True, exist_ok=True)
        settings.heartbeat_path.write_text(content)
        assert read_heartbeat() is None


class TestHeartbeatWriter:
    def test_beat_failure_is_logged_not_raised(self, tmp_path):
        # Parent is a file, so the write fails
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        writer = HeartbeatWriter(path=blocker / "heartbeat")

        assert writer.beat() is False

    async def test_start_writes_immediately_and_stop_ends_loop(self, settings):
        writer = HeartbeatWriter(interval=60)
        writer.start()
        async with asyncio.timeout(2):
            while read_heartbeat() is None:
                await asyncio.sleep(0.005)

        await writer.stop()
        await writer.stop()

        assert read_heartbeat() is not None


# --- reaper ---


class TestReaper:
    def test_stops_only_sandboxes_past_max_age(self, runtime):
        old = _running(NOW - MAX_AGE - 1)
        at_limit = _running(NOW - MAX_AGE)
        fresh = _running(NOW - 1000)
        runtime.containers = [old, at_limit, fresh]

        stopped = reap_stale_sandboxes(NOW, max_age_ms=MAX_AGE)

        assert stopped == [old.name]
        assert runtime.stopped == [old.name]

    def test_skips_unparseable_names(self, runtime):
        runtime.containers = [
            ContainerInfo(name="nanoclaw-family-1700000000000", status="running"),
            ContainerInfo(name="nanoclaw-123", status="running"),
        ]

        assert reap_stale_sandboxes(NOW, max_age_ms=MAX_AGE) == []
        assert runtime.stopped == []

    def test_ignores_stopped_and_foreign_containers(self, runtime):
        runtime.containers = [
            ContainerInfo(name=f"nanoclaw-{NOW - MAX_AGE * 2}", status="exited"),
            ContainerInfo(name=f"other-{NOW - MAX_AGE * 2}", status="running"),
        ]

        assert reap_stale_sandboxes(NOW, max_age_ms=MAX_AGE) == []
        assert runtime.stopped == []

    def test_failed_stop_is_not_reported(self, runtime):
        old = _running(NOW - MAX_AGE - 1)
        runtime.containers = [old]
        runtime.stop_result = False

        assert reap_stale_sandboxes(NOW, max_age_ms=MAX_AGE) == []
        assert runtime.stopped == [old.name]

    def test_default_max_age_from_settings(self, runtime, settings):
        assert settings.max_sandbox_age_ms == MAX_AGE
        old = _running(NOW - MAX_AGE - 1)
        runtime.containers = [old, _running(NOW - MAX_AGE)]

        assert reap_stale_sandboxes(NOW) == [old.name]


# --- heartbeat check ---


class TestCheckHeartbeat:
    STALE_MS = 300 * 1000

    def test_no_heartbeat_file_no_kill(self):
        with patch("nanoclaw.liveness.monitor.kill_host") as kill:
            assert check_heartbeat(NOW) is False
        kill.assert_not_called()

    def test_empty_heartbeat_file_no_kill(self, settings):
        settings.heartbeat_path.parent.mkdir(parents=True, exist_ok=True)
        settings.heartbeat_path.write_text("")
        with patch("nanoclaw.liveness.monitor.kill_host") as kill:
            assert check_heartbeat(NOW) is False
        kill.assert_not_called()

    def test_age_at_threshold_is_fresh(self):
        write_heartbeat(timestamp_ms=NOW - self.STALE_MS)
        with patch("nanoclaw.liveness.monitor.kill_host") as kill:
            assert check_heartbeat(NOW) is False
        kill.assert_not_called()

    def test_age_past_threshold_kills(self):
        write_heartbeat(timestamp_ms=NOW - self.STALE_MS - 1)
        with patch("nanoclaw.liveness.monitor.kill_host", return_value=True) as kill:
            assert check_heartbeat(NOW) is True
        kill.assert_called_once()

    def test_stale_with_no_matching_host_logs_separately(self):
        write_heartbeat(timestamp_ms=NOW - self.STALE_MS - 1)
        with (
            patch("nanoclaw.liveness.monitor.kill_host", return_value=False),
            patch("nanoclaw.liveness.monitor.logger") as log,
        ):
            assert check_heartbeat(NOW) is False

        messages = [c.args[0] for c in log.method_calls]
        assert "Stale heartbeat but no host process matched" in messages
        assert "Host killed, supervisor should restart it" not in messages


class TestKillHost:
    def test_runs_pkill_with_host_pattern(self, settings):
        settings.watchdog.host_pattern = "nanoclaw run"
        with patch(
            "nanoclaw.liveness.monitor.subprocess.run",
            return_value=subprocess.CompletedProcess([], 0),
        ) as run:
            assert kill_host() is True
        assert run.call_args.args[0] == ["pkill", "-f", "nanoclaw run"]

    @pytest.mark.parametrize(
        "cmdline",
        [
            "/venv/bin/python /venv/bin/nanoclaw",
            "/venv/bin/python /venv/bin/nanoclaw run",
            "python -m nanoclaw",
            "python3 -m nanoclaw run",
        ],
    )
    def test_default_pattern_matches_host_launches(self, cmdline):
        assert re.search(WatchdogConfig().host_pattern, cmdline)

    @pytest.mark.parametrize(
        "cmdline",
        [
            "/venv/bin/python /venv/bin/nanoclaw chat --group main",
            "/venv/bin/python /venv/bin/nanoclaw watchdog",
            "python -m nanoclaw register x@g.us Family family",
        ],
    )
    def test_default_pattern_skips_other_subcommands(self, cmdline):
        assert not re.search(WatchdogConfig().host_pattern, cmdline)

    def test_nothing_matched(self):
        with patch(
            "nanoclaw.liveness.monitor.subprocess.run",
            return_value=subprocess.CompletedProcess([], 1),
        ):
            assert kill_host() is False

    def test_pkill_missing(self):
        with patch("nanoclaw.liveness.monitor.subprocess.run", side_effect=FileNotFoundError):
            assert kill_host() is False


# --- watchdog tick ---


class TestWatchdogTick:
    def test_reaps_even_without_heartbeat(self, runtime):
        old = _running(NOW - MAX_AGE - 1)
        runtime.containers = [old]

        with patch("nanoclaw.liveness.monitor.kill_host") as kill:
            assert run_watchdog_tick(NOW) == 0

        assert runtime.stopped == [old.name]
        kill.assert_not_called()

    def test_reaps_before_killing_host(self, runtime):
        order: list[str] = []
        old = _running(NOW - MAX_AGE - 1)
        runtime.containers = [old]
        original_stop = runtime.stop_container

        def stop(name: str) -> bool:
            order.append("reap")
            return original_stop(name)

        runtime.stop_container = stop
        write_heartbeat(timestamp_ms=NOW - 10_000_000)
        kill = MagicMock(side_effect=lambda: order.append("kill") or True)

        with patch("nanoclaw.liveness.monitor.kill_host", kill):
            assert run_watchdog_tick(NOW) == 0

        assert order == ["reap", "kill"]

    def test_healthy_host_untouched(self, runtime):
        write_heartbeat(timestamp_ms=NOW - 1000)
        runtime.containers = [_running(NOW - 1000)]

        with patch("nanoclaw.liveness.monitor.kill_host") as kill:
            assert run_watchdog_tick(NOW) == 0

        kill.assert_not_called()
        assert runtime.stopped == []
