"""Tests for container runtime detection and the runtime helpers."""

from __future__ import annotations

import subprocess
from unittest.mock import patch

import pytest

from nanoclaw.runtime import ContainerRuntime, detect_runtime, get_runtime, reset_runtime
from nanoclaw.runtime.runtime import _apple_runtime, _docker_runtime
from nanoclaw.types import ContainerInfo


def _runtime_with(listing) -> ContainerRuntime:
    return ContainerRuntime(name="docker", cli="docker", _ensure=lambda: None, _list=listing)


class TestDetectRuntime:
    def test_override_docker(self, settings):
        settings.container.runtime = "docker"
        assert detect_runtime().name == "docker"

    def test_override_apple(self, settings):
        settings.container.runtime = "apple"
        rt = detect_runtime()
        assert rt.name == "apple"
        assert rt.cli == "container"

    def test_unknown_override_falls_back(self, settings):
        settings.container.runtime = "podman"
        with (
            patch("nanoclaw.runtime.runtime.sys.platform", "linux"),
            patch("nanoclaw.runtime.runtime.shutil.which", return_value="/usr/bin/docker"),
        ):
            assert detect_runtime().name == "docker"

    def test_linux_defaults_to_docker(self):
        with (
            patch("nanoclaw.runtime.runtime.sys.platform", "linux"),
            patch("nanoclaw.runtime.runtime.shutil.which", return_value=None),
        ):
            assert detect_runtime().name == "docker"

    def test_macos_prefers_apple_container(self):
        with (
            patch("nanoclaw.runtime.runtime.sys.platform", "darwin"),
            patch("nanoclaw.runtime.runtime.shutil.which", return_value="/usr/local/bin/container"),
        ):
            assert detect_runtime().name == "apple"

    def test_get_runtime_caches(self, monkeypatch, settings):
        monkeypatch.setattr("nanoclaw.runtime.runtime._runtime", None)
        settings.container.runtime = "docker"
        first = get_runtime()
        assert get_runtime() is first
        reset_runtime()
        assert get_runtime() is not first


class TestContainerListing:
    def test_running_filters_by_status(self):
        rt = _runtime_with(
            lambda prefix: [
                ContainerInfo(name=f"{prefix}1", status="running"),
                ContainerInfo(name=f"{prefix}2", status="exited"),
            ]
        )
        assert rt.list_running_containers("nanoclaw-") == ["nanoclaw-1"]

    @pytest.mark.parametrize("exc", [OSError("no cli"), ValueError("bad json")])
    def test_listing_failure_is_empty(self, exc):
        def boom(prefix):
            raise exc

        rt = _runtime_with(boom)
        assert rt.list_containers() == []
        assert rt.list_running_containers() == []

    def test_docker_listing_parses_ps_lines(self):
        from nanoclaw.runtime.runtime import _list_docker

        stdout = (
            '{"Names": "nanoclaw-1700000000000", "State": "running"}\n'
            '{"Names": "unrelated", "State": "running"}\n'
            '{"Names": "nanoclaw-1700000000001", "State": "exited"}\n'
        )
        with patch(
            "nanoclaw.runtime.runtime.subprocess.run",
            return_value=subprocess.CompletedProcess([], 0, stdout=stdout),
        ):
            infos = _list_docker("nanoclaw-")

        assert infos == [
            ContainerInfo(name="nanoclaw-1700000000000", status="running"),
            ContainerInfo(name="nanoclaw-1700000000001", status="exited"),
        ]

    def test_apple_listing_parses_json(self):
        from nanoclaw.runtime.runtime import _list_apple

        stdout = (
            '[{"configuration": {"id": "nanoclaw-1700000000000"}, "status": "running"},'
            ' {"configuration": {"id": "other"}, "status": "running"}]'
        )
        with patch(
            "nanoclaw.runtime.runtime.subprocess.run",
            return_value=subprocess.CompletedProcess([], 0, stdout=stdout),
        ):
            infos = _list_apple("nanoclaw-")

        assert infos == [ContainerInfo(name="nanoclaw-1700000000000", status="running")]


class TestStopContainer:
    def test_success(self):
        rt = _runtime_with(lambda prefix: [])
        with patch(
            "nanoclaw.runtime.runtime.subprocess.run",
            return_value=subprocess.CompletedProcess([], 0),
        ) as run:
            assert rt.stop_container("nanoclaw-1") is True
        assert run.call_args.args[0] == ["docker", "stop", "nanoclaw-1"]

    def test_failure_returns_false(self):
        rt = _runtime_with(lambda prefix: [])
        with patch(
            "nanoclaw.runtime.runtime.subprocess.run",
            side_effect=subprocess.CalledProcessError(1, ["docker", "stop"]),
        ):
            assert rt.stop_container("nanoclaw-1") is False


class TestEnsureRunning:
    def test_docker_running_is_a_noop(self):
        with patch(
            "nanoclaw.runtime.runtime.subprocess.run",
            return_value=subprocess.CompletedProcess([], 0),
        ) as run:
            _docker_runtime().ensure_running()
        assert run.call_args.args[0] == ["docker", "info"]

    def test_docker_down_raises(self):
        with (
            patch(
                "nanoclaw.runtime.runtime.subprocess.run",
                side_effect=subprocess.CalledProcessError(1, ["docker", "info"]),
            ),
            pytest.raises(RuntimeError, match="Docker is required"),
        ):
            _docker_runtime().ensure_running()

    def test_apple_system_is_started_when_stopped(self):
        calls: list[list[str]] = []

        def fake_run(cmd, **kwargs):
            calls.append(cmd)
            if cmd[-1] == "status":
                raise subprocess.CalledProcessError(1, cmd)
            return subprocess.CompletedProcess(cmd, 0)

        with patch("nanoclaw.runtime.runtime.subprocess.run", side_effect=fake_run):
            _apple_runtime().ensure_running()

        assert calls == [["container", "system", "status"], ["container", "system", "start"]]

    def test_apple_start_failure_raises(self):
        with (
            patch("nanoclaw.runtime.runtime.subprocess.run", side_effect=FileNotFoundError),
            pytest.raises(RuntimeError, match="Apple Container"),
        ):
            _apple_runtime().ensure_running()
