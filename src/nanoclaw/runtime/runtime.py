"""Container runtime detection — Apple Container or Docker.

Detects which container CLI is available and provides runtime-specific
helpers for system startup checks, listing containers and stopping them.
"""

from __future__ import annotations

import json
import shutil
import subprocess
import sys
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from nanoclaw.logger import logger
from nanoclaw.types import ContainerInfo

_STOP_TIMEOUT = 30  # seconds to wait for `<cli> stop` to return


@runtime_checkable
class RuntimeProvider(Protocol):
    """Runtime provider contract implemented by the built-in runtimes."""

    name: str
    cli: str

    def is_available(self) -> bool: ...
    def ensure_running(self) -> None: ...
    def list_containers(self, prefix: str = "nanoclaw-") -> list[ContainerInfo]: ...
    def list_running_containers(self, prefix: str = "nanoclaw-") -> list[str]: ...
    def stop_container(self, name: str) -> bool: ...


@dataclass(frozen=True)
class ContainerRuntime:
    """Built-in runtime implementation wrapper."""

    name: str
    cli: str
    _ensure: Callable[[], None]
    _list: Callable[[str], list[ContainerInfo]]

    def is_available(self) -> bool:
        return shutil.which(self.cli) is not None

    def ensure_running(self) -> None:
        self._ensure()

    def list_containers(self, prefix: str = "nanoclaw-") -> list[ContainerInfo]:
        """Return every container (any status) whose name starts with *prefix*."""
        try:
            return self._list(prefix)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Failed to list containers", err=str(exc), runtime=self.name)
            return []

    def list_running_containers(self, prefix: str = "nanoclaw-") -> list[str]:
        """Return names of running containers matching *prefix*."""
        return [c.name for c in self.list_containers(prefix) if c.status == "running"]

    def stop_container(self, name: str) -> bool:
        """Stop a container by name. Returns False (and logs) on failure."""
        try:
            subprocess.run(
                [self.cli, "stop", name],
                capture_output=True,
                check=True,
                timeout=_STOP_TIMEOUT,
            )
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as exc:
            logger.warning("Failed to stop container", name=name, err=str(exc), runtime=self.name)
            return False
        return True


def _succeeds(cmd: list[str], timeout: float | None = None) -> bool:
    """Run *cmd* quietly; True when it exits 0."""
    try:
        subprocess.run(cmd, capture_output=True, check=True, timeout=timeout)
    except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError):
        return False
    return True


# -- Apple Container ---------------------------------------------------------


def _ensure_apple() -> None:
    if _succeeds(["container", "system", "status"]):
        return
    logger.info("Apple Container system not running, starting it")
    if not _succeeds(["container", "system", "start"], timeout=30):
        raise RuntimeError("Apple Container system is required but failed to start")
    logger.info("Apple Container system started")


def _list_apple(prefix: str) -> list[ContainerInfo]:
    # `container ls --format json` is one array of {configuration: {id}, status}
    result = subprocess.run(
        ["container", "ls", "--all", "--format", "json"],
        capture_output=True,
        text=True,
    )
    return [
        ContainerInfo(name=name, status=c.get("status", ""))
        for c in json.loads(result.stdout or "[]")
        if (name := c.get("configuration", {}).get("id", "")).startswith(prefix)
    ]


def _apple_runtime() -> ContainerRuntime:
    return ContainerRuntime(name="apple", cli="container", _ensure=_ensure_apple, _list=_list_apple)


# -- Docker ------------------------------------------------------------------


def _ensure_docker() -> None:
    if _succeeds(["docker", "info"]):
        return
    hint = (
        "start Docker Desktop"
        if sys.platform == "darwin"
        else "start it with `sudo systemctl start docker`"
    )
    raise RuntimeError(f"Docker is required but its daemon is not reachable; {hint}")


def _list_docker(prefix: str) -> list[ContainerInfo]:
    result = subprocess.run(
        ["docker", "ps", "--all", "--format", "{{json .}}"],
        capture_output=True,
        text=True,
    )
    infos: list[ContainerInfo] = []
    for line in result.stdout.strip().splitlines():
        if not line:
            continue
        c = json.loads(line)
        name = c.get("Names", "")
        if name.startswith(prefix):
            # `docker ps` reports State as "running", "exited", "created", ...
            infos.append(ContainerInfo(name=name, status=c.get("State", "")))
    return infos


def _docker_runtime() -> ContainerRuntime:
    return ContainerRuntime(name="docker", cli="docker", _ensure=_ensure_docker, _list=_list_docker)


# -- Selection ---------------------------------------------------------------


def detect_runtime() -> RuntimeProvider:
    """Detect the container runtime to use.

    Priority:
    1) settings.container.runtime override
    2) macOS prefers Apple Container when its CLI is installed
    3) docker when installed, else the platform default
    """
    from nanoclaw.config import get_settings

    override = (get_settings().container.runtime or "").lower()
    candidates: dict[str, ContainerRuntime] = {
        "apple": _apple_runtime(),
        "docker": _docker_runtime(),
    }
    if override:
        selected = candidates.get(override)
        if selected is not None:
            return selected
        logger.warning("Unknown runtime override; falling back to auto-detection", runtime=override)

    apple = candidates["apple"]
    docker = candidates["docker"]

    if sys.platform == "darwin" and apple.is_available():
        return apple

    if docker.is_available():
        if sys.platform == "darwin":
            logger.info(
                "Apple Container not found, falling back to Docker. "
                "For better macOS integration, install Apple Container: "
                "https://developer.apple.com/documentation/apple-containers"
            )
        return docker

    # Fallback: Apple Container on macOS, Docker everywhere else
    return apple if sys.platform == "darwin" else docker


_runtime: RuntimeProvider | None = None


def get_runtime() -> RuntimeProvider:
    """Lazy singleton — caches the result of detect_runtime()."""
    global _runtime  # noqa: PLW0603
    if _runtime is None:
        _runtime = detect_runtime()
        logger.info("Container runtime detected", name=_runtime.name, cli=_runtime.cli)
    return _runtime


def reset_runtime() -> None:
    """Clear the cached runtime (for tests)."""
    global _runtime  # noqa: PLW0603
    _runtime = None
