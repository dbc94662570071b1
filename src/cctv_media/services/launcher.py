"""FFmpeg process launcher.

Builds argument vectors for every operation the manager performs and spawns
FFmpeg as an asyncio subprocess.

Argument Order (all operations):
    ffmpeg <global> <input flags> -i <source> <codec/encoding> <output format> <destination>

    Encoding flags are appended in a fixed sequence by FFmpegCommandBuilder:
    codec, preset, [-s resolution], [-b:v bitrate], [-r framerate], tuning.
    Optional flags never need to be spliced in relative to a sibling flag.

Operations:
    LIVE_TRANSCODE - RTSP -> libx264 -> HLS playlist + segments
    RECORD         - RTSP -> libx264/aac -> single file, optional -t
    SNAPSHOT       - RTSP -> one JPEG frame
    PROBE          - RTSP -> null muxer for one second

Logging Strategy:
    DEBUG - Full (credential-masked) command lines, PIDs
    INFO  - Process spawned
    WARN  - Forced kill after grace window
    ERROR - Spawn failures
"""
from __future__ import annotations

import asyncio
import logging
import subprocess
from enum import Enum
from pathlib import Path
from typing import Final

from ..config.ffmpeg_defaults import (
    GLOBAL_FFMPEG_PARAMS,
    HLS_FLAGS,
    LIVE_TUNING_PARAMS,
    LIVE_VIDEO_CODEC,
    PROBE_DURATION_SECONDS,
    RECORDING_AUDIO_CODEC,
    RECORDING_MUXERS,
    RECORDING_PRESET,
    RECORDING_VIDEO_CODEC,
    SNAPSHOT_SIZE,
    get_input_params,
    get_quality_crf,
)
from ..errors import SpawnError
from ..models.stream import RecordingOptions, StreamOptions
from ..utils.strings import mask_args
from .. import metrics

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

DEFAULT_STOP_GRACE: Final[float] = 5.0
"""Seconds between SIGTERM and SIGKILL."""


class ProcessKind(str, Enum):
    """Operation a spawned FFmpeg process performs."""

    LIVE_TRANSCODE = "live-transcode"
    RECORD = "record"
    SNAPSHOT = "snapshot"
    PROBE = "probe"


# ============================================================================
# Command Builder
# ============================================================================

class FFmpegCommandBuilder:
    """Deterministic FFmpeg argument vector construction.

    Example:
        >>> builder = FFmpegCommandBuilder("ffmpeg")
        >>> builder.probe("rtsp://cam/stream")[-4:]
        ['-t', '1', '-f', 'null', '-']
    """

    def __init__(self, binary: str = "ffmpeg", rtsp_transport: str | None = "tcp") -> None:
        self.binary = binary
        self.rtsp_transport = rtsp_transport

    def _input(self, source_uri: str) -> list[str]:
        cmd = [self.binary]
        cmd.extend(GLOBAL_FFMPEG_PARAMS)
        cmd.extend(get_input_params(source_uri, self.rtsp_transport))
        cmd.extend(["-i", source_uri])
        return cmd

    def live_transcode(
        self,
        source_uri: str,
        options: StreamOptions,
        playlist_path: Path,
        segment_pattern: Path,
    ) -> list[str]:
        """Build an RTSP -> HLS transcode command."""
        cmd = self._input(source_uri)

        cmd.extend(["-c:v", LIVE_VIDEO_CODEC])
        cmd.extend(["-preset", options.preset])
        if options.resolution:
            cmd.extend(["-s", options.resolution])
        if options.bitrate:
            cmd.extend(["-b:v", options.bitrate])
        if options.framerate:
            cmd.extend(["-r", str(options.framerate)])
        cmd.extend(LIVE_TUNING_PARAMS)

        cmd.extend([
            "-f", "hls",
            "-hls_time", str(options.segment_time),
            "-hls_list_size", str(options.playlist_size),
            "-hls_flags", HLS_FLAGS,
            "-hls_segment_filename", str(segment_pattern),
        ])

        cmd.append(str(playlist_path))
        return cmd

    def record(self, source_uri: str, options: RecordingOptions, output_path: Path) -> list[str]:
        """Build a recording command, bounded by -t when a duration is set."""
        cmd = self._input(source_uri)

        cmd.extend([
            "-c:v", RECORDING_VIDEO_CODEC,
            "-preset", RECORDING_PRESET,
            "-crf", get_quality_crf(options.quality),
            "-c:a", RECORDING_AUDIO_CODEC,
        ])
        if options.duration:
            cmd.extend(["-t", str(options.duration)])

        cmd.extend(["-f", RECORDING_MUXERS[options.format], "-y"])
        cmd.append(str(output_path))
        return cmd

    def snapshot(self, source_uri: str, output_path: Path, size: str = SNAPSHOT_SIZE) -> list[str]:
        """Build a single-frame JPEG extraction command."""
        cmd = self._input(source_uri)
        cmd.extend(["-frames:v", "1", "-s", size, "-f", "image2", "-y"])
        cmd.append(str(output_path))
        return cmd

    def probe(self, source_uri: str) -> list[str]:
        """Build a decode-only connectivity check with no persistent output."""
        cmd = self._input(source_uri)
        cmd.extend(["-t", PROBE_DURATION_SECONDS, "-f", "null", "-"])
        return cmd


# ============================================================================
# Process Handle
# ============================================================================

class ProcessHandle:
    """Live handle to a spawned FFmpeg process.

    Wraps an ``asyncio.subprocess.Process`` (or anything with the same
    pid/returncode/stdout/stderr/wait/terminate/kill surface) and adds
    graceful-then-forced stopping.
    """

    def __init__(self, kind: ProcessKind, process: asyncio.subprocess.Process, args: list[str]) -> None:
        self.kind = kind
        self.args = args
        self._process = process
        self._reaped = False
        metrics.ffmpeg_processes_active.labels(kind=kind.value).inc()

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self._process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self._process.stderr

    async def wait(self) -> int:
        """Wait for exit and return the exit code."""
        code = await self._process.wait()
        if not self._reaped:
            self._reaped = True
            metrics.ffmpeg_processes_active.labels(kind=self.kind.value).dec()
        return code

    async def communicate(self) -> bytes:
        """Read stderr to EOF, wait for exit, return stderr bytes."""
        output = await self.stderr.read() if self.stderr is not None else b""
        await self.wait()
        return output

    def terminate(self) -> None:
        """Send SIGTERM if still running."""
        if self.returncode is None:
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass

    def kill(self) -> None:
        """Send SIGKILL if still running."""
        if self.returncode is None:
            try:
                self._process.kill()
            except ProcessLookupError:
                pass

    async def stop(self, grace: float = DEFAULT_STOP_GRACE) -> int:
        """SIGTERM, wait up to ``grace`` seconds, then SIGKILL.

        Returns:
            Exit code of the process
        """
        if self.returncode is None:
            self.terminate()
            try:
                return await asyncio.wait_for(self.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning(f"{self.kind.value} PID={self.pid} ignored SIGTERM for {grace}s, killing")
                self.kill()
        return await self.wait()

    async def kill_and_wait(self) -> int:
        """SIGKILL immediately and reap."""
        self.kill()
        return await self.wait()


# ============================================================================
# Launcher
# ============================================================================

class ProcessLauncher:
    """Spawns FFmpeg processes and hands back ProcessHandles.

    Attributes:
        builder: Command builder bound to the configured binary
    """

    def __init__(self, binary: str = "ffmpeg", rtsp_transport: str | None = "tcp") -> None:
        self.builder = FFmpegCommandBuilder(binary, rtsp_transport)

    async def spawn(
        self,
        kind: ProcessKind,
        args: list[str],
        output_path: Path | None = None,
        capture_stdout: bool = True,
    ) -> ProcessHandle:
        """Spawn FFmpeg with stdin closed and stderr piped.

        Args:
            kind: Operation being launched
            args: Full argument vector (binary first)
            output_path: Destination file; its directory is created first
            capture_stdout: Pipe stdout (True) or discard it

        Returns:
            Handle to the running process

        Raises:
            SpawnError: Output directory or binary unusable
        """
        if output_path is not None:
            try:
                Path(output_path).parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error(f"Cannot create output directory for {kind.value}: {e}")
                raise SpawnError(
                    f"Cannot create output directory: {e}",
                    {"kind": kind.value, "output_path": str(output_path)},
                ) from e

        logger.debug(f"Spawning {kind.value}: {mask_args(args)}")

        try:
            process = await self._create_process(
                args,
                subprocess.PIPE if capture_stdout else subprocess.DEVNULL,
            )
        except OSError as e:
            logger.error(f"Failed to spawn {args[0]} for {kind.value}: {e}")
            raise SpawnError(
                f"Failed to spawn {args[0]}: {e}",
                {"kind": kind.value, "binary": args[0]},
            ) from e

        logger.info(f"Spawned {kind.value} (PID={process.pid})")
        return ProcessHandle(kind, process, args)

    async def _create_process(self, args: list[str], stdout: int) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *args,
            stdin=subprocess.DEVNULL,
            stdout=stdout,
            stderr=subprocess.PIPE,
        )
