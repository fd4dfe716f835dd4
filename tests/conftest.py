"""Shared test fixtures for nanoclaw."""

from __future__ import annotations

import asyncio
import contextlib
from unittest.mock import AsyncMock, patch

import pytest

from nanoclaw.types import ContainerInfo, NewMessage

# ---------------------------------------------------------------------------
# Shared helpers (plain functions and classes, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset(
    {
        "project_root",
        "groups_dir",
        "data_dir",
        "store_dir",
        "heartbeat_path",
        "watchdog_log_path",
        "container_timeout",
        "idle_timeout",
        "max_sandbox_age_ms",
        "trigger_pattern",
    }
)


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (agent, container, etc.) and cached property
    overrides (project_root, data_dir, groups_dir, etc.).

    Usage::

        s = make_settings(project_root=tmp_path)
        s = make_settings(container=ContainerConfig(max_concurrent=3))
    """
    from nanoclaw.config import (
        AgentConfig,
        ContainerConfig,
        GroupsConfig,
        IntervalsConfig,
        LoggingConfig,
        QueueConfig,
        Settings,
        SlackConfig,
        WatchdogConfig,
        WhatsAppConfig,
    )

    # Separate cached properties from model fields
    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "agent": AgentConfig(),
        "container": ContainerConfig(),
        "intervals": IntervalsConfig(),
        "queue": QueueConfig(),
        "watchdog": WatchdogConfig(),
        "groups": GroupsConfig(),
        "logging": LoggingConfig(),
        "slack": SlackConfig(),
        "whatsapp": WhatsAppConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


class FakeChannel:
    """Channel that records what it sends and owns every JID starting with *prefix*."""

    def __init__(self, name: str = "fake", prefix: str = "", prefix_assistant_name: bool = True):
        self.name = name
        self._prefix = prefix
        self.prefix_assistant_name = prefix_assistant_name
        self.sent: list[tuple[str, str]] = []
        self.typing: list[tuple[str, bool]] = []
        self.fail_with: Exception | None = None

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    async def send_message(self, jid: str, text: str) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((jid, text))

    async def set_typing(self, jid: str, is_typing: bool) -> None:
        self.typing.append((jid, is_typing))

    def is_connected(self) -> bool:
        return True

    def owns_jid(self, jid: str) -> bool:
        return jid.startswith(self._prefix)


class FakeRuntime:
    """In-memory RuntimeProvider: a fixed container listing and a stop log."""

    name = "fake"
    cli = "fake-cli"

    def __init__(self, containers: list[ContainerInfo] | None = None) -> None:
        self.containers = list(containers or [])
        self.stopped: list[str] = []
        self.stop_result = True

    def is_available(self) -> bool:
        return True

    def ensure_running(self) -> None:
        pass

    def list_containers(self, prefix: str = "nanoclaw-") -> list[ContainerInfo]:
        return [c for c in self.containers if c.name.startswith(prefix)]

    def list_running_containers(self, prefix: str = "nanoclaw-") -> list[str]:
        return [c.name for c in self.list_containers(prefix) if c.status == "running"]

    def stop_container(self, name: str) -> bool:
        self.stopped.append(name)
        return self.stop_result


class FakeStdin:
    """Write side of the container's stdin pipe."""

    def __init__(self) -> None:
        self.buffer = bytearray()
        self.closed = False
        self.fail_writes = False
        self.on_write = None

    def write(self, data: bytes) -> None:
        if self.fail_writes or self.closed:
            raise BrokenPipeError("stdin closed")
        self.buffer += data
        if self.on_write is not None:
            self.on_write(bytes(data))

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    def is_closing(self) -> bool:
        return self.closed


class FakeProcess:
    """Simulates asyncio.subprocess.Process for testing.

    With ``exit_on_close`` set, the fake agent exits with that code as soon
    as the close sentinel arrives on stdin, like a cooperative agent does.
    """

    def __init__(self, exit_on_close: int | None = None) -> None:
        self.stdin = FakeStdin()
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self._returncode: int | None = None
        self._wait_event = asyncio.Event()
        self.pid = 12345
        self.killed = False
        if exit_on_close is not None:
            self.stdin.on_write = lambda data: (
                self.close(exit_on_close) if b"_close" in data else None
            )

    def emit_stdout(self, data: bytes) -> None:
        self.stdout.feed_data(data)

    def emit_stderr(self, data: bytes) -> None:
        self.stderr.feed_data(data)

    def close(self, code: int = 0) -> None:
        """Simulate process exit."""
        if self._returncode is not None:
            return
        self._returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._wait_event.set()

    async def wait(self) -> int:
        await self._wait_event.wait()
        return self._returncode  # type: ignore[return-value]

    def kill(self) -> None:
        self.killed = True
        self.close(-9)

    @property
    def returncode(self) -> int | None:
        return self._returncode

    @property
    def sent_input(self) -> bytes:
        return bytes(self.stdin.buffer)


def output_block(payload: str) -> bytes:
    """Stdout bytes carrying one marker-delimited result."""
    from nanoclaw.container_runner import OUTPUT_END_MARKER, OUTPUT_START_MARKER

    return f"{OUTPUT_START_MARKER}\n{payload}\n{OUTPUT_END_MARKER}\n".encode()


@contextlib.contextmanager
def fake_spawn(proc: FakeProcess, *, stop_closes_process: bool = True):
    """Route container spawns to *proc* and record forced stops.

    Yields ``(spawn, stop)`` mocks. The forced stop ends the fake process
    with code 137 unless *stop_closes_process* is False.
    """

    async def _stop(name: str) -> None:  # noqa: ARG001
        if stop_closes_process:
            proc.close(137)

    spawn = AsyncMock(return_value=proc)
    stop = AsyncMock(side_effect=_stop)
    with (
        patch("asyncio.create_subprocess_exec", spawn),
        patch("nanoclaw.container_runner._sandbox.stop_container_async", stop),
    ):
        yield spawn, stop


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def settings(tmp_path, monkeypatch):
    """Give every test its own Settings rooted in ``tmp_path``.

    Built with ``make_settings()`` from pure defaults — no config.toml, no
    .env, no file I/O. Every directory (groups, data, store) lives under the
    test's temporary root.
    """
    s = make_settings(project_root=tmp_path)
    s.container.close_grace_seconds = 0.05
    monkeypatch.setattr("nanoclaw.config._settings", s)
    return s


@pytest.fixture(autouse=True)
def runtime(monkeypatch):
    """Install a FakeRuntime so no test shells out to docker or container."""
    fake = FakeRuntime()
    monkeypatch.setattr("nanoclaw.runtime.runtime._runtime", fake)
    return fake


@pytest.fixture(autouse=True, scope="session")
def _close_test_database():
    """Close the aiosqlite connection after all tests complete.

    Uses ``stop()`` + thread join rather than ``await close()`` because
    the connection was created on a function-scoped event loop.
    """
    yield
    import nanoclaw.db._connection as db_conn

    if db_conn._db is not None:
        db_conn._db.stop()
        if db_conn._db._thread is not None and db_conn._db._thread.is_alive():
            db_conn._db._thread.join(timeout=2)
        db_conn._db = None


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def db():
    """Fresh in-memory database for the test."""
    from nanoclaw.db import _init_test_database

    await _init_test_database()


@pytest.fixture
def make_msg():
    """Factory fixture for creating test messages with defaults."""

    def _make(
        *,
        id: str = "1",
        chat_jid: str = "group@g.us",
        sender: str = "123@s.whatsapp.net",
        sender_name: str = "Alice",
        content: str = "hello",
        timestamp: str = "2024-01-01T00:00:00.000Z",
        is_from_me: bool | None = None,
    ) -> NewMessage:
        return NewMessage(
            id=id,
            chat_jid=chat_jid,
            sender=sender,
            sender_name=sender_name,
            content=content,
            timestamp=timestamp,
            is_from_me=is_from_me,
        )

    return _make
