"""Host heartbeat — a single integer (epoch ms) rewritten on every tick."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

from nanoclaw.config import get_settings
from nanoclaw.logger import logger


def now_ms() -> int:
    return int(time.time() * 1000)


def write_heartbeat(path: Path | None = None, timestamp_ms: int | None = None) -> None:
    """Atomically replace the heartbeat file with *timestamp_ms*.

    Raises OSError if the file cannot be written.
    """
    if path is None:
        path = get_settings().heartbeat_path
    if timestamp_ms is None:
        timestamp_ms = now_ms()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp")
    tmp.write_text(str(timestamp_ms))
    tmp.replace(path)


def read_heartbeat(path: Path | None = None) -> int | None:
    """Return the last heartbeat (epoch ms), or None if absent, empty or garbled."""
    if path is None:
        path = get_settings().heartbeat_path
    try:
        raw = path.read_text().strip()
    except FileNotFoundError:
        return None
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class HeartbeatWriter:
    """Rewrites the heartbeat file every ``watchdog.heartbeat_interval`` seconds.

    A failed write is logged and retried on the next tick; the loop only
    ends when stopped.
    """

    def __init__(self, path: Path | None = None, interval: float | None = None) -> None:
        s = get_settings()
        self.path = path or s.heartbeat_path
        self.interval = interval if interval is not None else s.watchdog.heartbeat_interval
        self._task: asyncio.Task[None] | None = None

    def beat(self) -> bool:
        try:
            write_heartbeat(self.path)
        except OSError as exc:
            logger.warning("Failed to write heartbeat", path=str(self.path), err=str(exc))
            return False
        return True

    async def _run(self) -> None:
        while True:
            self.beat()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="heartbeat")
            logger.info("Heartbeat writer started", path=str(self.path), interval=self.interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
