"""
Integration tests for the cctv-media command line.
"""

import asyncio
import os
import signal
import sys

import pytest

from cctv_media.cli import _wait_for_interrupt, build_parser, main
from fake_ffmpeg import install

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="needs shebang scripts")


@pytest.fixture(autouse=True)
def keep_pytest_logging(monkeypatch):
    """main() would replace the root handlers pytest relies on."""
    monkeypatch.setattr("cctv_media.cli.configure_logging", lambda: None)


@pytest.fixture
def config(tmp_path):
    binary = install(tmp_path)
    path = tmp_path / "config.yml"
    path.write_text(
        "media:\n"
        f"  ffmpeg_binary: {binary}\n"
        f"  streams_dir: {tmp_path / 'streams'}\n"
        f"  recordings_dir: {tmp_path / 'recordings'}\n"
        f"  thumbnails_dir: {tmp_path / 'thumbnails'}\n"
        "  stop_grace: 1.0\n"
    )
    return path


class TestParser:
    """Tests for build_parser()."""

    def test_start_hls_options(self):
        args = build_parser().parse_args(
            ["start-hls", "cam1", "rtsp://10.0.0.5/s", "--resolution", "1280x720", "--preset", "veryfast"]
        )

        assert args.command == "start-hls"
        assert args.stream_id == "cam1"
        assert args.resolution == "1280x720"
        assert args.preset == "veryfast"

    def test_rejects_unknown_quality(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["record", "r1", "rtsp://x", "--quality", "8k"])


class TestWaitForInterrupt:
    """Tests for _wait_for_interrupt()."""

    @pytest.mark.asyncio
    async def test_cancel_removes_signal_handlers(self):
        """Should leave no handlers behind when the wait is cancelled."""
        loop = asyncio.get_running_loop()
        waiter = asyncio.create_task(_wait_for_interrupt())
        await asyncio.sleep(0)

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        assert loop.remove_signal_handler(signal.SIGINT) is False
        assert loop.remove_signal_handler(signal.SIGTERM) is False

    @pytest.mark.asyncio
    async def test_signal_ends_wait(self):
        waiter = asyncio.create_task(_wait_for_interrupt())
        await asyncio.sleep(0)

        os.kill(os.getpid(), signal.SIGTERM)

        await asyncio.wait_for(waiter, timeout=2.0)


@pytest.mark.integration
class TestCommands:
    """Commands run end to end against the fake ffmpeg binary."""

    def test_test_stream_ok(self, config, capsys):
        assert main(["--config", str(config), "test-stream", "rtsp://admin:s3cret@ok/s", "--timeout", "5"]) == 0

        out = capsys.readouterr().out
        assert "OK" in out
        assert "s3cret" not in out

    def test_test_stream_unreachable(self, config, capsys):
        assert main(["--config", str(config), "test-stream", "rtsp://refused/s", "--timeout", "5"]) == 1

        assert "UNREACHABLE" in capsys.readouterr().out

    def test_thumbnail(self, config, tmp_path):
        output = tmp_path / "thumb.jpg"

        assert main(["--config", str(config), "thumbnail", "rtsp://ok/s", str(output)]) == 0
        assert output.exists()

    def test_thumbnail_failure_exit_code(self, config, tmp_path, capsys):
        output = tmp_path / "thumb.jpg"

        assert main(["--config", str(config), "thumbnail", "rtsp://nofile/s", str(output)]) == 1
        assert "SNAPSHOT_FAILED" in capsys.readouterr().err

    def test_bounded_record(self, config, tmp_path):
        output = tmp_path / "clip.mp4"

        assert main(["--config", str(config), "record", "r1", "rtsp://ok/s", "--duration", "1", "-o", str(output)]) == 0
        assert output.exists()
