"""
Integration tests for MediaManager against real subprocesses.

A small Python script stands in for ffmpeg (see fake_ffmpeg.py) so the
asyncio subprocess, signal and pipe handling run for real.
"""

import asyncio
import os
import sys

import pytest
import pytest_asyncio

from cctv_media.errors import SnapshotError, SnapshotTimeoutError, SpawnError, StreamStartError
from cctv_media.main import media_lifespan
from cctv_media.models.events import LifecycleEventType
from cctv_media.models.stream import StreamStatus
from cctv_media.services.media_manager import MediaManager
from conftest import next_event
from fake_ffmpeg import install

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX signals and shebang scripts"),
]


def _alive(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


@pytest.fixture
def real_settings(settings, tmp_path):
    settings.ffmpeg_binary = str(install(tmp_path))
    settings.startup_grace = 5.0
    settings.stop_grace = 1.0
    settings.probe_timeout = 5.0
    settings.snapshot_timeout = 5.0
    return settings


@pytest_asyncio.fixture
async def media(real_settings):
    manager = MediaManager(real_settings)
    yield manager
    await manager.shutdown()


class TestLiveTranscode:
    """Live sessions with a real child process."""

    @pytest.mark.asyncio
    async def test_acquire_and_release(self, media, real_settings):
        locator = await media.acquire("cam1", "rtsp://ok/stream1")

        session = media.get_session("cam1")
        assert locator == "/streams/cam1/playlist.m3u8"
        assert session.status is StreamStatus.RUNNING
        assert real_settings.playlist_path("cam1").exists()
        assert _alive(session.pid)

        assert await media.release("cam1") is True
        assert not _alive(session.pid)

    @pytest.mark.asyncio
    async def test_source_failure_during_startup(self, media):
        with pytest.raises(StreamStartError) as exc_info:
            await media.acquire("cam1", "rtsp://refused/stream1")

        assert "Connection refused" in exc_info.value.details["error"]
        assert media.get_session("cam1").status is StreamStatus.FAILED

    @pytest.mark.asyncio
    async def test_stubborn_process_is_killed(self, media):
        """Release returns within the grace window even if SIGTERM is ignored."""
        await media.acquire("cam1", "rtsp://stubborn/stream1")
        pid = media.get_session("cam1").pid

        loop = asyncio.get_running_loop()
        started = loop.time()
        assert await media.release("cam1") is True

        assert loop.time() - started < media.settings.stop_grace + 1.0
        assert not _alive(pid)

    @pytest.mark.asyncio
    async def test_missing_binary(self, real_settings, tmp_path):
        real_settings.ffmpeg_binary = str(tmp_path / "not-installed")
        manager = MediaManager(real_settings)

        with pytest.raises(SpawnError):
            await manager.acquire("cam1", "rtsp://ok/stream1")

        assert manager.get_session("cam1") is None
        await manager.shutdown()


class TestRecording:
    """Recordings with a real child process."""

    @pytest.mark.asyncio
    async def test_bounded_recording_finishes(self, media):
        queue = media.events.subscribe()

        path = await media.start_recording("r1", "rtsp://ok/stream1", options={"duration": 1})
        event = await next_event(queue, timeout=5.0)

        assert event.type is LifecycleEventType.RECORDING_FINISHED
        assert event.exit_code == 0
        assert path.exists()
        assert media.get_recording("r1") is None

    @pytest.mark.asyncio
    async def test_stop_open_ended_recording(self, media):
        queue = media.events.subscribe()
        path = await media.start_recording("r1", "rtsp://ok/stream1")
        await asyncio.sleep(0.3)

        assert await media.stop_recording("r1") is True

        event = await next_event(queue, timeout=5.0)
        assert event.type is LifecycleEventType.RECORDING_FINISHED
        assert path.exists()


class TestUtilities:
    """Probe and snapshot with a real child process."""

    @pytest.mark.asyncio
    async def test_probe_reachable(self, media):
        assert await media.probe("rtsp://ok/stream1") is True

    @pytest.mark.asyncio
    async def test_probe_refused(self, media):
        assert await media.probe("rtsp://refused/stream1") is False

    @pytest.mark.asyncio
    async def test_probe_silent_source_is_bounded(self, media):
        loop = asyncio.get_running_loop()
        started = loop.time()

        assert await media.probe("rtsp://hang/stream1", timeout=0.5) is False

        assert loop.time() - started < 2.0

    @pytest.mark.asyncio
    async def test_snapshot(self, media, tmp_path):
        path = await media.snapshot("rtsp://ok/stream1", tmp_path / "thumb.jpg")

        assert path.read_bytes().startswith(b"\xff\xd8")

    @pytest.mark.asyncio
    async def test_snapshot_without_file(self, media, tmp_path):
        with pytest.raises(SnapshotError):
            await media.snapshot("rtsp://nofile/stream1", tmp_path / "thumb.jpg")

    @pytest.mark.asyncio
    async def test_snapshot_timeout(self, media, tmp_path):
        with pytest.raises(SnapshotTimeoutError):
            await media.snapshot("rtsp://hang/stream1", tmp_path / "thumb.jpg", timeout=0.5)


class TestLifespan:
    """media_lifespan() owns construction and teardown."""

    @pytest.mark.asyncio
    async def test_shutdown_on_exit(self, real_settings):
        async with media_lifespan(real_settings) as manager:
            await manager.acquire("cam1", "rtsp://ok/stream1")
            await manager.start_recording("r1", "rtsp://ok/stream1")
            pids = [manager.get_session("cam1").pid, manager.get_recording("r1").pid]

        assert manager.closed
        assert not any(_alive(pid) for pid in pids)
        assert not (real_settings.streams_dir / "cam1").exists()
