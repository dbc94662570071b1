"""Lifecycle supervision for live transcode sessions.

Observes each supervised process and drives its session through the state
machine:

    STARTING --(manifest exists on disk)--------> RUNNING
    STARTING|RUNNING --(exit 0 or stop requested)--> STOPPED
    STARTING|RUNNING --(nonzero exit)-------------> FAILED

Readiness:
    The manifest file is the single authoritative readiness signal. FFmpeg
    diagnostic lines ("Opening ...", "Stream #0:0 ...") are only logged.

Terminal States:
    Entering STOPPED or FAILED emits a notification and schedules removal of
    the stream's output directory after ``cleanup_delay`` seconds. The
    removal is skipped if a live session for the same id exists by then.

Logging Strategy:
    DEBUG - FFmpeg diagnostic lines, ignored transitions
    INFO  - State transitions, artifact cleanup
    WARN  - Unexpected exits
    ERROR - Artifact cleanup failures
"""
from __future__ import annotations

import asyncio
import logging
import shutil
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Final

from ..config_io import MediaSettings
from ..logging_config import FFMPEG_LOGGER_NAME
from ..models.events import LifecycleEvent, LifecycleEventType
from ..models.stream import ALLOWED_TRANSITIONS, StreamSession, StreamStatus
from .events import EventBus
from .launcher import ProcessHandle
from .. import metrics

logger = logging.getLogger(__name__)
ffmpeg_logger = logging.getLogger(FFMPEG_LOGGER_NAME)

# ============================================================================
# Constants
# ============================================================================

DIAGNOSTIC_TAIL_LINES: Final[int] = 20
"""Recent stderr lines kept per process for failure reports."""

DRAIN_FLUSH_TIMEOUT: Final[float] = 1.0
"""Time allowed for output readers to hit EOF after exit."""

# ============================================================================
# Supervised Process Record
# ============================================================================

@dataclass(eq=False)
class SupervisedProcess:
    """Resource-side companion of a StreamSession.

    Holds everything that touches the OS process so the session record
    itself stays plain data.
    """

    session: StreamSession
    handle: ProcessHandle
    settled: asyncio.Event = field(default_factory=asyncio.Event)
    diagnostics: deque[str] = field(default_factory=lambda: deque(maxlen=DIAGNOSTIC_TAIL_LINES))
    stop_requested: bool = False
    tasks: list[asyncio.Task] = field(default_factory=list)


# ============================================================================
# Output Draining
# ============================================================================

def log_diagnostic(label: str, message: str) -> None:
    """Log one FFmpeg output line by severity."""
    msg_lower = message.lower()
    if 'error' in msg_lower or 'fatal' in msg_lower:
        ffmpeg_logger.error(f"FFmpeg [{label}]: {message}")
    elif 'warning' in msg_lower:
        ffmpeg_logger.warning(f"FFmpeg [{label}]: {message}")
    else:
        ffmpeg_logger.debug(f"FFmpeg [{label}]: {message}")


async def drain_output(
    reader: asyncio.StreamReader | None,
    label: str,
    tail: deque[str] | None = None,
) -> None:
    """Read a process stream line by line until EOF.

    Keeps the pipe from filling up (which would stall FFmpeg) and records
    the most recent lines in ``tail``.
    """
    if reader is None:
        return

    while True:
        try:
            line = await reader.readline()
        except ValueError:
            logger.debug(f"[{label}] Oversized output line discarded")
            continue

        if not line:
            break

        message = line.decode(errors="replace").strip()
        if not message:
            continue

        if tail is not None:
            tail.append(message)
        log_diagnostic(label, message)


def start_draining(handle: ProcessHandle, label: str, tail: deque[str] | None = None) -> list[asyncio.Task]:
    """Start background readers for a handle's stdout and stderr."""
    return [
        asyncio.create_task(drain_output(handle.stdout, label), name=f"{label}:stdout"),
        asyncio.create_task(drain_output(handle.stderr, label, tail), name=f"{label}:stderr"),
    ]


# ============================================================================
# Supervisor
# ============================================================================

class LifecycleSupervisor:
    """Drives session state from process events and owns artifact cleanup.

    Args:
        settings: Paths and timing
        events: Where lifecycle notifications are published
        has_active_session: Lookup used to skip cleanup of a directory that a
            newer session for the same id is writing into
    """

    def __init__(
        self,
        settings: MediaSettings,
        events: EventBus,
        has_active_session: Callable[[str], bool],
    ) -> None:
        self.settings = settings
        self.events = events
        self._has_active_session = has_active_session
        self._cleanups: dict[str, asyncio.Task] = {}
        self._watchers: set[asyncio.Task] = set()

    # ========================================================================
    # Supervision
    # ========================================================================

    def supervise(self, session: StreamSession, handle: ProcessHandle) -> SupervisedProcess:
        """Begin tracking a freshly spawned live transcode."""
        proc = SupervisedProcess(session=session, handle=handle)
        label = f"live:{session.id}"

        drains = start_draining(handle, label, proc.diagnostics)
        proc.tasks.extend(drains)
        proc.tasks.append(asyncio.create_task(self._watch_readiness(proc), name=f"{label}:ready"))
        proc.tasks.append(asyncio.create_task(self._watch_exit(proc, drains), name=f"{label}:exit"))

        for task in proc.tasks:
            self._track(task)

        logger.debug(f"[{session.id}] Supervising PID={handle.pid}")
        return proc

    def _track(self, task: asyncio.Task) -> None:
        self._watchers.add(task)
        task.add_done_callback(self._watchers.discard)

    async def _watch_readiness(self, proc: SupervisedProcess) -> None:
        playlist = self.settings.playlist_path(proc.session.id)
        interval = self.settings.readiness_poll_interval

        while proc.session.status is StreamStatus.STARTING:
            if playlist.exists():
                self.transition(proc, StreamStatus.RUNNING)
                return
            await asyncio.sleep(interval)

    async def _watch_exit(self, proc: SupervisedProcess, drains: list[asyncio.Task]) -> None:
        session = proc.session
        try:
            code = await proc.handle.wait()
            await asyncio.wait(drains, timeout=DRAIN_FLUSH_TIMEOUT)
        except asyncio.CancelledError:
            logger.debug(f"[{session.id}] Exit watcher cancelled")
            raise

        if proc.stop_requested or code == 0:
            logger.info(f"[{session.id}] FFmpeg exited (code {code})")
            self.transition(proc, StreamStatus.STOPPED, exit_code=code)
        else:
            last_line = proc.diagnostics[-1] if proc.diagnostics else None
            logger.warning(f"[{session.id}] FFmpeg exited unexpectedly (code {code}): {last_line}")
            self.transition(proc, StreamStatus.FAILED, exit_code=code, error=last_line)

    # ========================================================================
    # State Transitions
    # ========================================================================

    def transition(
        self,
        proc: SupervisedProcess,
        status: StreamStatus,
        exit_code: int | None = None,
        error: str | None = None,
    ) -> bool:
        """Apply a forward-only transition and its side effects.

        Returns:
            True if the status changed, False if the transition is not legal
            from the current state (e.g. a late exit after a stop)
        """
        session = proc.session
        previous = session.status

        if status not in ALLOWED_TRANSITIONS[previous]:
            logger.debug(f"[{session.id}] Ignoring transition {previous.value} -> {status.value}")
            return False

        session.status = status
        if exit_code is not None:
            session.exit_code = exit_code
        if error is not None:
            session.last_error = error

        logger.info(f"[{session.id}] {previous.value} -> {status.value}")

        if status is StreamStatus.RUNNING:
            proc.settled.set()
            metrics.streams_start_total.labels(status="ready").inc()
            self.events.publish(LifecycleEvent(
                type=LifecycleEventType.STARTED,
                id=session.id,
                output_path=session.output_locator,
            ))
            return True

        proc.settled.set()
        if status is StreamStatus.FAILED:
            metrics.stream_errors_total.labels(stream_id=session.id).inc()
            self.events.publish(LifecycleEvent(
                type=LifecycleEventType.ERRORED,
                id=session.id,
                exit_code=session.exit_code,
                error=session.last_error,
            ))
        else:
            self.events.publish(LifecycleEvent(
                type=LifecycleEventType.STOPPED,
                id=session.id,
                exit_code=session.exit_code,
            ))

        self.schedule_cleanup(session.id)
        return True

    # ========================================================================
    # Artifact Cleanup
    # ========================================================================

    def schedule_cleanup(self, stream_id: str) -> None:
        """Remove the stream's output directory after cleanup_delay."""
        self.cancel_cleanup(stream_id)
        task = asyncio.create_task(self._delayed_cleanup(stream_id), name=f"cleanup:{stream_id}")
        self._cleanups[stream_id] = task
        task.add_done_callback(lambda t: self._forget_cleanup(stream_id, t))

    def _forget_cleanup(self, stream_id: str, task: asyncio.Task) -> None:
        if self._cleanups.get(stream_id) is task:
            del self._cleanups[stream_id]

    def cancel_cleanup(self, stream_id: str) -> None:
        task = self._cleanups.pop(stream_id, None)
        if task is not None and not task.done():
            task.cancel()
            logger.debug(f"[{stream_id}] Pending cleanup cancelled")

    async def _delayed_cleanup(self, stream_id: str) -> None:
        await asyncio.sleep(self.settings.cleanup_delay)
        if self._has_active_session(stream_id):
            logger.debug(f"[{stream_id}] Cleanup skipped, stream active again")
            return
        self.remove_artifacts(stream_id)

    def remove_artifacts(self, stream_id: str) -> None:
        """Delete the stream's output directory now."""
        stream_dir = self.settings.streams_dir / stream_id
        if not stream_dir.exists():
            return
        try:
            shutil.rmtree(stream_dir)
            logger.info(f"[{stream_id}] Cleaned up stream files")
        except OSError as e:
            logger.error(f"[{stream_id}] Failed to clean up stream files: {e}")

    # ========================================================================
    # Shutdown
    # ========================================================================

    async def close(self) -> None:
        """Cancel remaining watchers and run pending cleanups now."""
        cleanup_ids = list(self._cleanups)
        for stream_id in cleanup_ids:
            self.cancel_cleanup(stream_id)

        pending = [task for task in self._watchers if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for stream_id in cleanup_ids:
            if not self._has_active_session(stream_id):
                self.remove_artifacts(stream_id)
        logger.debug(
            f"Supervisor closed ({len(pending)} watcher(s) cancelled, "
            f"{len(cleanup_ids)} cleanup(s) run early)"
        )
