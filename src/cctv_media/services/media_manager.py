"""Media process lifecycle manager.

Owns every FFmpeg process run against live camera sources:
- Live HLS transcodes, shared between viewers and reference counted
- Recordings, exclusive per id
- Connectivity probes and single-frame snapshots, never registered

Sharing Model:
    acquire() on an id whose session is starting or running only bumps the
    viewer count. release() decrements it and stops the transcoder once the
    count reaches zero. Any number of acquire/release pairs for an id spawn
    exactly one process and signal it exactly once. Viewers still attached
    to a session that failed are carried over when a fresh session replaces
    it, and their releases are absorbed before the fresh count is touched.

Critical Sections:
    A per-id asyncio.Lock serializes the check-then-act sequence of acquire,
    release and shutdown for one id. The lock is held across the stop grace
    window so a fresh session never writes into the directory of a process
    that is still exiting. Different ids never wait on each other.

Error Propagation:
    Validation and spawn failures are raised to the caller. Anything that
    happens after a successful spawn surfaces as session state and lifecycle
    events only.

Logging Strategy:
    DEBUG - Lock contention, viewer count changes
    INFO  - Session/recording start and stop, shutdown
    WARN  - Startup timeouts, probe/snapshot failures
    ERROR - Unexpected errors during shutdown
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import deque
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Final

from pydantic import ValidationError

from ..config.ffmpeg_defaults import HLS_SEGMENT_PATTERN, SNAPSHOT_SIZE
from ..config_io import MediaSettings
from ..errors import (
    InvalidRequestError,
    ManagerClosedError,
    RecordingInProgressError,
    SnapshotError,
    SnapshotTimeoutError,
    SpawnError,
    StartupTimeoutError,
    StreamStartError,
)
from ..models.events import LifecycleEvent, LifecycleEventType
from ..models.stream import (
    RESOLUTION_PATTERN,
    RecordingJob,
    RecordingOptions,
    StreamOptions,
    StreamSession,
    StreamStatus,
)
from ..utils.strings import mask_credentials
from ..utils.validation import validate_media_id, validate_source_uri
from .events import EventBus
from .launcher import ProcessHandle, ProcessKind, ProcessLauncher
from .supervisor import (
    DIAGNOSTIC_TAIL_LINES,
    DRAIN_FLUSH_TIMEOUT,
    LifecycleSupervisor,
    SupervisedProcess,
    log_diagnostic,
    start_draining,
)
from .. import metrics

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

STREAM_FOUND_PATTERN: Final[re.Pattern[str]] = re.compile(r"Stream #\d+:\d+.*: (Video|Audio):")
"""FFmpeg input dump line announcing a decodable elementary stream."""

SNAPSHOT_EXTENSION: Final[str] = "jpg"

STREAM_LOCK: Final[str] = "stream"
RECORDING_LOCK: Final[str] = "recording"


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class MediaManager:
    """Explicitly constructed owner of all media processes.

    Create one per process, pass it to whatever needs it, and call
    shutdown() at teardown (or use main.media_lifespan()).

    Attributes:
        settings: Paths, binary and timing
        launcher: Spawns FFmpeg processes
        events: Lifecycle notifications (subscribe or add listeners here)
        supervisor: Drives live session state and artifact cleanup

    Example:
        >>> manager = MediaManager(load_settings())
        >>> locator = await manager.acquire("cam1", "rtsp://10.0.0.5/stream")
        >>> await manager.release("cam1")
        True
    """

    def __init__(
        self,
        settings: MediaSettings | None = None,
        launcher: ProcessLauncher | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.settings = settings or MediaSettings()
        self.launcher = launcher or ProcessLauncher(self.settings.ffmpeg_binary, self.settings.rtsp_transport)
        self.events = events or EventBus()
        self.supervisor = LifecycleSupervisor(self.settings, self.events, self.has_active_session)

        # Stream registry: pure state records plus a side table of live resources
        self._sessions: dict[str, StreamSession] = {}
        self._processes: dict[str, SupervisedProcess] = {}

        # Recording registry
        self._recordings: dict[str, RecordingJob] = {}
        self._recording_handles: dict[str, ProcessHandle] = {}
        self._stopping_recordings: set[ProcessHandle] = set()

        # Viewers still attached to a terminal session when a fresh one replaced it
        self._orphaned_viewers: dict[str, int] = {}

        # Per-id locks, evicted once nobody holds or waits on them
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._lock_users: dict[tuple[str, str], int] = {}
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

        self.events.add_listener(self._refresh_metrics)

        logger.info(
            f"MediaManager initialized: ffmpeg={self.settings.ffmpeg_binary}, "
            f"streams_dir={self.settings.streams_dir}"
        )

    # ========================================================================
    # Internal Helpers
    # ========================================================================

    @property
    def closed(self) -> bool:
        return self._closed

    @asynccontextmanager
    async def _locked(self, namespace: str, media_id: str) -> AsyncIterator[None]:
        """Hold the per-id lock for ``namespace``."""
        key = (namespace, media_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        elif lock.locked():
            logger.debug(f"[{media_id}] Waiting for {namespace} lock")

        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    def _ensure_open(self) -> None:
        if self._closed:
            raise ManagerClosedError("Media manager has been shut down")

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    def _validate_request(media_id: str, source_uri: str) -> None:
        valid, error = validate_media_id(media_id)
        if not valid:
            raise InvalidRequestError(error, {"id": media_id})

        valid, error = validate_source_uri(source_uri)
        if not valid:
            raise InvalidRequestError(error, {"source_uri": mask_credentials(source_uri)})

    @staticmethod
    def _coerce_options(options: Any, model: type) -> Any:
        if options is None:
            return model()
        if isinstance(options, model):
            return options
        try:
            return model(**options)
        except (TypeError, ValidationError) as e:
            raise InvalidRequestError(f"Invalid options: {e}") from e

    def has_active_session(self, stream_id: str) -> bool:
        """True if a starting or running session exists for the id."""
        session = self._sessions.get(stream_id)
        return session is not None and session.status.is_active

    def _refresh_metrics(self, event: LifecycleEvent | None = None) -> None:
        metrics.streams_active.set(sum(1 for s in self._sessions.values() if s.status.is_active))
        metrics.recordings_active.set(len(self._recordings))

    def _set_viewer_metric(self, stream_id: str, count: int | None) -> None:
        if count is not None:
            metrics.stream_viewers.labels(stream_id=stream_id).set(count)
            return
        try:
            metrics.stream_viewers.remove(stream_id)
        except KeyError:
            pass

    # ========================================================================
    # Live Sessions
    # ========================================================================

    async def acquire(
        self,
        stream_id: str,
        source_uri: str,
        options: StreamOptions | dict[str, Any] | None = None,
    ) -> str:
        """Attach a viewer to the live transcode for ``stream_id``.

        Shares the existing session if it is starting or running, otherwise
        spawns a new transcoder and waits up to ``startup_grace`` seconds for
        its manifest.

        Args:
            stream_id: Caller-chosen id, also the output directory name
            source_uri: Camera source address
            options: Encoding parameters (ignored when sharing)

        Returns:
            Public manifest path, e.g. "/streams/cam1/playlist.m3u8"

        Raises:
            ManagerClosedError: shutdown() has been called
            InvalidRequestError: Bad id, source or options
            SpawnError: FFmpeg could not be started (nothing registered)
            StartupTimeoutError: Manifest did not appear in time; the process
                keeps running and stays visible via get_session()
            StreamStartError: Process exited before the manifest appeared
        """
        self._ensure_open()
        self._validate_request(stream_id, source_uri)
        stream_options = self._coerce_options(options, StreamOptions)

        async with self._locked(STREAM_LOCK, stream_id):
            self._ensure_open()

            session = self._sessions.get(stream_id)
            if session is not None and session.status.is_active:
                session.viewer_count += 1
                self._set_viewer_metric(stream_id, session.viewer_count)
                metrics.streams_start_total.labels(status="shared").inc()
                if session.source_uri != source_uri:
                    logger.warning(f"[{stream_id}] Shared session uses its original source, ignoring new one")
                logger.debug(f"[{stream_id}] Sharing session, viewers={session.viewer_count}")
                return session.output_locator

            proc = await self._start_session(stream_id, source_uri, stream_options)

        try:
            await asyncio.wait_for(proc.settled.wait(), timeout=self.settings.startup_grace)
        except asyncio.TimeoutError:
            metrics.streams_start_total.labels(status="timeout").inc()
            logger.warning(
                f"[{stream_id}] Manifest not ready after {self.settings.startup_grace}s, "
                f"process left running (PID={proc.handle.pid})"
            )
            raise StartupTimeoutError(
                f"Stream {stream_id} did not become ready within {self.settings.startup_grace}s",
                {"stream_id": stream_id, "pid": proc.handle.pid},
            )

        session = proc.session
        if session.status is StreamStatus.RUNNING:
            return session.output_locator

        metrics.streams_start_total.labels(status="failed").inc()
        raise StreamStartError(
            f"Stream {stream_id} exited during startup",
            {"stream_id": stream_id, "exit_code": session.exit_code, "error": session.last_error},
        )

    async def _start_session(self, stream_id: str, source_uri: str, options: StreamOptions) -> SupervisedProcess:
        """Spawn and register a fresh session. Caller holds the stream lock."""
        previous = self._sessions.get(stream_id)
        self.supervisor.cancel_cleanup(stream_id)
        self.supervisor.remove_artifacts(stream_id)

        playlist = self.settings.playlist_path(stream_id)
        args = self.launcher.builder.live_transcode(
            source_uri,
            options,
            playlist,
            playlist.parent / HLS_SEGMENT_PATTERN,
        )

        logger.info(f"[{stream_id}] Starting live transcode ({mask_credentials(source_uri)})")
        try:
            handle = await self.launcher.spawn(ProcessKind.LIVE_TRANSCODE, args, output_path=playlist)
        except SpawnError:
            metrics.streams_start_total.labels(status="spawn_error").inc()
            raise

        session = StreamSession(
            id=stream_id,
            source_uri=source_uri,
            output_locator=self.settings.output_locator(stream_id),
            pid=handle.pid,
        )
        if previous is not None and previous.viewer_count > 0:
            # Their release() calls must not count against the fresh session
            orphaned = self._orphaned_viewers.get(stream_id, 0) + previous.viewer_count
            self._orphaned_viewers[stream_id] = orphaned
            logger.debug(f"[{stream_id}] Replacing {previous.status.value} session, orphaned viewers={orphaned}")
        self._sessions[stream_id] = session
        self._processes[stream_id] = self.supervisor.supervise(session, handle)

        metrics.streams_start_total.labels(status="spawned").inc()
        self._set_viewer_metric(stream_id, session.viewer_count)
        self._refresh_metrics()
        return self._processes[stream_id]

    async def release(self, stream_id: str) -> bool:
        """Detach one viewer; stop the transcoder when none remain.

        Returns:
            True only if this call stopped the session and removed it
        """
        async with self._locked(STREAM_LOCK, stream_id):
            session = self._sessions.get(stream_id)
            if session is None:
                logger.debug(f"[{stream_id}] Release for unknown stream ignored")
                return False

            orphaned = self._orphaned_viewers.get(stream_id, 0)
            if orphaned > 0:
                if orphaned == 1:
                    del self._orphaned_viewers[stream_id]
                else:
                    self._orphaned_viewers[stream_id] = orphaned - 1
                logger.debug(f"[{stream_id}] Released viewer of a replaced session, orphaned={orphaned - 1}")
                return False

            session.viewer_count = max(0, session.viewer_count - 1)
            if session.viewer_count > 0:
                self._set_viewer_metric(stream_id, session.viewer_count)
                logger.debug(f"[{stream_id}] Viewer released, viewers={session.viewer_count}")
                return False

            await self._terminate_session(stream_id)
            metrics.streams_stop_total.inc()
            return True

    async def _terminate_session(self, stream_id: str) -> None:
        """Stop the session's process and drop it. Caller holds the stream lock."""
        session = self._sessions[stream_id]
        proc = self._processes[stream_id]

        session.viewer_count = 0
        proc.stop_requested = True

        logger.info(f"[{stream_id}] Stopping live transcode (PID={proc.handle.pid})")
        code = await proc.handle.stop(self.settings.stop_grace)
        self.supervisor.transition(proc, StreamStatus.STOPPED, exit_code=code)

        del self._sessions[stream_id]
        del self._processes[stream_id]
        self._set_viewer_metric(stream_id, None)
        self._refresh_metrics()
        logger.info(f"[{stream_id}] Stream stopped")

    # ========================================================================
    # Recordings
    # ========================================================================

    async def start_recording(
        self,
        recording_id: str,
        source_uri: str,
        output_path: str | Path | None = None,
        options: RecordingOptions | dict[str, Any] | None = None,
    ) -> Path:
        """Start an exclusive recording.

        Args:
            recording_id: Unique while the recording is in flight
            source_uri: Camera source address
            output_path: Destination file, default
                <recordings_dir>/<id>_<epoch_ms>.<format>
            options: Container, quality and optional duration in seconds

        Returns:
            Path of the file being written (complete only after the
            recording_finished event)

        Raises:
            ManagerClosedError, InvalidRequestError, SpawnError,
            RecordingInProgressError: Same id already recording
        """
        self._ensure_open()
        self._validate_request(recording_id, source_uri)
        recording_options = self._coerce_options(options, RecordingOptions)

        async with self._locked(RECORDING_LOCK, recording_id):
            self._ensure_open()

            if recording_id in self._recordings:
                raise RecordingInProgressError(
                    f"Recording {recording_id} is already in progress",
                    {"recording_id": recording_id},
                )

            if output_path is None:
                path = self.settings.recordings_dir / f"{recording_id}_{_epoch_ms()}.{recording_options.format}"
            else:
                path = Path(output_path)

            args = self.launcher.builder.record(source_uri, recording_options, path)
            logger.info(f"[{recording_id}] Starting recording ({mask_credentials(source_uri)}) -> {path}")
            handle = await self.launcher.spawn(ProcessKind.RECORD, args, output_path=path)

            job = RecordingJob(
                id=recording_id,
                source_uri=source_uri,
                output_path=path,
                duration=recording_options.duration,
                pid=handle.pid,
            )
            self._recordings[recording_id] = job
            self._recording_handles[recording_id] = handle
            self._refresh_metrics()

            self._track(asyncio.create_task(self._watch_recording(job, handle), name=f"record:{recording_id}"))

        return path

    async def _watch_recording(self, job: RecordingJob, handle: ProcessHandle) -> None:
        tail: deque[str] = deque(maxlen=DIAGNOSTIC_TAIL_LINES)
        drains = start_draining(handle, f"record:{job.id}", tail)
        for task in drains:
            self._track(task)

        code = await handle.wait()
        await asyncio.wait(drains, timeout=DRAIN_FLUSH_TIMEOUT)

        stop_requested = handle in self._stopping_recordings
        self._stopping_recordings.discard(handle)
        self._drop_recording(job.id, handle)

        if code == 0 or stop_requested:
            metrics.recordings_total.labels(result="finished").inc()
            logger.info(f"[{job.id}] Recording finished (code {code}): {job.output_path}")
            event_type = LifecycleEventType.RECORDING_FINISHED
            error = None
        else:
            metrics.recordings_total.labels(result="errored").inc()
            error = tail[-1] if tail else None
            logger.warning(f"[{job.id}] Recording failed (code {code}): {error}")
            event_type = LifecycleEventType.RECORDING_ERRORED

        self.events.publish(LifecycleEvent(
            type=event_type,
            id=job.id,
            exit_code=code,
            output_path=str(job.output_path),
            error=error,
        ))

    def _drop_recording(self, recording_id: str, handle: ProcessHandle) -> None:
        """Remove the registry entry if it still belongs to ``handle``."""
        if self._recording_handles.get(recording_id) is handle:
            del self._recording_handles[recording_id]
            del self._recordings[recording_id]
            self._refresh_metrics()

    async def stop_recording(self, recording_id: str) -> bool:
        """Stop a recording (SIGTERM, then SIGKILL after stop_grace).

        Returns:
            True if an active recording was found and stopped
        """
        async with self._locked(RECORDING_LOCK, recording_id):
            handle = self._recording_handles.get(recording_id)
            if handle is None:
                logger.debug(f"[{recording_id}] Stop for unknown recording ignored")
                return False

            self._stopping_recordings.add(handle)
            logger.info(f"[{recording_id}] Stopping recording (PID={handle.pid})")
            await handle.stop(self.settings.stop_grace)
            self._drop_recording(recording_id, handle)
            return True

    # ========================================================================
    # Utility Operations
    # ========================================================================

    async def probe(self, source_uri: str, timeout: float | None = None) -> bool:
        """Check whether a source yields decodable media.

        Resolves True on the first "Stream #0:0: Video:" style line (or a
        clean exit), False on timeout, nonzero exit or spawn failure. The
        probe process is always killed and reaped before returning.

        Raises:
            InvalidRequestError: Malformed source URI
        """
        timeout = self.settings.probe_timeout if timeout is None else timeout
        valid, error = validate_source_uri(source_uri)
        if not valid:
            raise InvalidRequestError(error, {"source_uri": mask_credentials(source_uri)})

        masked = mask_credentials(source_uri)
        args = self.launcher.builder.probe(source_uri)
        try:
            handle = await self.launcher.spawn(ProcessKind.PROBE, args, capture_stdout=False)
        except SpawnError as e:
            metrics.probes_total.labels(result="spawn_error").inc()
            logger.warning(f"Probe could not start for {masked}: {e}")
            return False

        try:
            accessible = await asyncio.wait_for(self._read_probe(handle), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Probe timed out after {timeout}s: {masked}")
            accessible = False
        finally:
            await handle.kill_and_wait()

        metrics.probes_total.labels(result="accessible" if accessible else "unreachable").inc()
        logger.info(f"Probe {'succeeded' if accessible else 'failed'}: {masked}")
        return accessible

    @staticmethod
    async def _read_probe(handle: ProcessHandle) -> bool:
        if handle.stderr is not None:
            while True:
                try:
                    line = await handle.stderr.readline()
                except ValueError:
                    continue
                if not line:
                    break

                message = line.decode(errors="replace").strip()
                log_diagnostic("probe", message)
                if STREAM_FOUND_PATTERN.search(message):
                    return True

        return await handle.wait() == 0

    async def snapshot(
        self,
        source_uri: str,
        output_path: str | Path | None = None,
        timeout: float | None = None,
        size: str = SNAPSHOT_SIZE,
    ) -> Path:
        """Grab a single JPEG frame.

        Args:
            source_uri: Camera source address
            output_path: Destination, default <thumbnails_dir>/<epoch_ms>.jpg
            timeout: Seconds before the process is killed (default
                settings.snapshot_timeout)
            size: WIDTHxHEIGHT of the image

        Returns:
            Path of the written image

        Raises:
            InvalidRequestError: Malformed source or size
            SpawnError: FFmpeg could not be started
            SnapshotTimeoutError: No result within timeout
            SnapshotError: Nonzero exit, or exit 0 without a file
        """
        timeout = self.settings.snapshot_timeout if timeout is None else timeout
        valid, error = validate_source_uri(source_uri)
        if not valid:
            raise InvalidRequestError(error, {"source_uri": mask_credentials(source_uri)})
        if not RESOLUTION_PATTERN.match(size):
            raise InvalidRequestError("Size must look like WIDTHxHEIGHT", {"size": size})

        if output_path is None:
            path = self.settings.thumbnails_dir / f"{_epoch_ms()}.{SNAPSHOT_EXTENSION}"
        else:
            path = Path(output_path)

        args = self.launcher.builder.snapshot(source_uri, path, size)
        try:
            handle = await self.launcher.spawn(ProcessKind.SNAPSHOT, args, output_path=path, capture_stdout=False)
        except SpawnError:
            metrics.snapshots_total.labels(result="spawn_error").inc()
            raise

        try:
            stderr = await asyncio.wait_for(handle.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            metrics.snapshots_total.labels(result="timeout").inc()
            logger.warning(f"Snapshot timed out after {timeout}s: {mask_credentials(source_uri)}")
            raise SnapshotTimeoutError(
                f"Snapshot did not complete within {timeout}s",
                {"output_path": str(path)},
            )
        finally:
            await handle.kill_and_wait()

        lines = stderr.decode(errors="replace").strip().splitlines()
        last_line = lines[-1] if lines else None

        if handle.returncode != 0:
            metrics.snapshots_total.labels(result="failed").inc()
            logger.warning(f"Snapshot failed (code {handle.returncode}): {last_line}")
            raise SnapshotError(
                f"Snapshot process exited with code {handle.returncode}",
                {"exit_code": handle.returncode, "error": last_line},
            )

        if not path.exists():
            metrics.snapshots_total.labels(result="failed").inc()
            logger.warning(f"Snapshot exited cleanly but wrote no file: {path}")
            raise SnapshotError(
                "Snapshot process produced no output file",
                {"exit_code": 0, "output_path": str(path)},
            )

        metrics.snapshots_total.labels(result="ok").inc()
        logger.info(f"Snapshot saved: {path}")
        return path

    # ========================================================================
    # Queries
    # ========================================================================

    def get_session(self, stream_id: str) -> StreamSession | None:
        """Copy of the session for an id, including terminal ones still registered."""
        session = self._sessions.get(stream_id)
        return session.model_copy() if session is not None else None

    def list_active_sessions(self) -> list[StreamSession]:
        return [s.model_copy() for s in self._sessions.values() if s.status.is_active]

    def get_recording(self, recording_id: str) -> RecordingJob | None:
        job = self._recordings.get(recording_id)
        return job.model_copy() if job is not None else None

    def list_active_recordings(self) -> list[RecordingJob]:
        return [job.model_copy() for job in self._recordings.values()]

    # ========================================================================
    # Shutdown
    # ========================================================================

    async def shutdown(self) -> None:
        """Stop every session and recording and remove stream artifacts.

        Safe to call more than once. After the first call, acquire() and
        start_recording() raise ManagerClosedError.
        """
        if self._closed:
            return
        self._closed = True

        stream_ids = list(self._sessions)
        recording_ids = list(self._recording_handles)
        logger.info(f"Shutting down: {len(stream_ids)} stream(s), {len(recording_ids)} recording(s)")

        results = await asyncio.gather(
            *(self._shutdown_session(stream_id) for stream_id in stream_ids),
            *(self.stop_recording(recording_id) for recording_id in recording_ids),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                logger.error(f"Error during shutdown: {result}", exc_info=result)

        pending = [task for task in self._tasks if not task.done()]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=DRAIN_FLUSH_TIMEOUT)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)

        await self.supervisor.close()
        for stream_id in stream_ids:
            self.supervisor.remove_artifacts(stream_id)
        self._orphaned_viewers.clear()

        self.events.remove_listener(self._refresh_metrics)
        logger.info("Media manager shut down")

    async def _shutdown_session(self, stream_id: str) -> None:
        async with self._locked(STREAM_LOCK, stream_id):
            if stream_id in self._sessions:
                await self._terminate_session(stream_id)
