"""Shared fixtures: in-memory FFmpeg processes and a fast-timing manager."""
from __future__ import annotations

import asyncio
import itertools
import subprocess
from pathlib import Path
from typing import Callable

import pytest
import pytest_asyncio

from cctv_media.config_io import MediaSettings
from cctv_media.services.launcher import ProcessLauncher
from cctv_media.services.media_manager import MediaManager

_pids = itertools.count(40000)


def kind_of(args: list[str]) -> str:
    """Classify an argument vector the way the builder lays it out."""
    if "hls" in args:
        return "live"
    if "-frames:v" in args:
        return "snapshot"
    if args[-1] == "-":
        return "probe"
    return "record"


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process driven by the test."""

    def __init__(self, args: list[str], stdout_piped: bool = True) -> None:
        self.args = args
        self.kind = kind_of(args)
        self.pid = next(_pids)
        self.returncode: int | None = None
        self.stdout = asyncio.StreamReader() if stdout_piped else None
        self.stderr = asyncio.StreamReader()
        self.ignore_terminate = False
        self.terminate_calls = 0
        self.kill_calls = 0
        self._exited = asyncio.Event()

    @property
    def output_path(self) -> Path:
        return Path(self.args[-1])

    def emit(self, line: str) -> None:
        self.stderr.feed_data(line.encode() + b"\n")

    def finish(self, code: int = 0) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        if self.stdout is not None:
            self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.terminate_calls += 1
        if not self.ignore_terminate:
            self.finish(255)

    def kill(self) -> None:
        self.kill_calls += 1
        self.finish(-9)


class FakeLauncher(ProcessLauncher):
    """ProcessLauncher that hands out FakeProcesses.

    Live transcodes write their playlist on spawn unless auto_ready is off.
    Per-kind scripts run right after a process is created.
    """

    def __init__(self) -> None:
        super().__init__("ffmpeg")
        self.processes: list[FakeProcess] = []
        self.scripts: dict[str, Callable[[FakeProcess], None]] = {}
        self.auto_ready = True
        self.fail_with: OSError | None = None

    async def _create_process(self, args: list[str], stdout: int) -> FakeProcess:
        if self.fail_with is not None:
            raise self.fail_with

        proc = FakeProcess(args, stdout_piped=stdout == subprocess.PIPE)
        self.processes.append(proc)

        if proc.kind == "live" and self.auto_ready:
            proc.output_path.write_text("#EXTM3U\n")

        script = self.scripts.get(proc.kind)
        if script is not None:
            script(proc)
        return proc

    def of_kind(self, kind: str) -> list[FakeProcess]:
        return [p for p in self.processes if p.kind == kind]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true or fail the test."""
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout=timeout)


async def next_event(queue: asyncio.Queue, timeout: float = 2.0):
    return await asyncio.wait_for(queue.get(), timeout=timeout)


@pytest.fixture
def settings(tmp_path):
    return MediaSettings(
        streams_dir=tmp_path / "streams",
        recordings_dir=tmp_path / "recordings",
        thumbnails_dir=tmp_path / "thumbnails",
        startup_grace=1.0,
        stop_grace=0.2,
        cleanup_delay=0.05,
        readiness_poll_interval=0.01,
        probe_timeout=1.0,
        snapshot_timeout=1.0,
    )


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest_asyncio.fixture
async def manager(settings, launcher):
    media = MediaManager(settings, launcher=launcher)
    yield media
    await media.shutdown()
