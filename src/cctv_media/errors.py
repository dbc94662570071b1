"""Error taxonomy for the media process manager.

Every exception raised to callers carries a machine-readable code so the
embedding controller layer can map it to a response without string
matching.

Error Categories:
    - Request errors: INVALID_REQUEST, MANAGER_CLOSED
    - Spawn errors: SPAWN_FAILED
    - Startup errors: STARTUP_TIMEOUT, STREAM_START_FAILED
    - Recording errors: RECORDING_IN_PROGRESS
    - Snapshot errors: SNAPSHOT_FAILED, SNAPSHOT_TIMEOUT

Not Errors:
    Releasing or stopping an unknown id returns False. Two stop requests
    racing each other is expected, not exceptional.

    Failures after a process has been spawned (nonzero exit, crash) are
    reported through session state and lifecycle events, never raised into
    unrelated call stacks.
"""
from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Standardized error codes."""

    INVALID_REQUEST = "INVALID_REQUEST"
    MANAGER_CLOSED = "MANAGER_CLOSED"

    SPAWN_FAILED = "SPAWN_FAILED"

    STARTUP_TIMEOUT = "STARTUP_TIMEOUT"
    STREAM_START_FAILED = "STREAM_START_FAILED"

    RECORDING_IN_PROGRESS = "RECORDING_IN_PROGRESS"

    SNAPSHOT_FAILED = "SNAPSHOT_FAILED"
    SNAPSHOT_TIMEOUT = "SNAPSHOT_TIMEOUT"


class MediaError(Exception):
    """Base class for caller-facing media errors.

    Attributes:
        code: ErrorCode for programmatic handling
        message: Human-readable description
        details: Additional context (ids, exit codes, paths)
    """

    code: ErrorCode = ErrorCode.INVALID_REQUEST

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize as {"code", "message", "details"}."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


class InvalidRequestError(MediaError, ValueError):
    """Bad stream id, source URI or options. Nothing was attempted."""

    code = ErrorCode.INVALID_REQUEST


class ManagerClosedError(MediaError):
    """The manager has been shut down."""

    code = ErrorCode.MANAGER_CLOSED


class SpawnError(MediaError):
    """The FFmpeg binary could not be started (missing, not executable)."""

    code = ErrorCode.SPAWN_FAILED


class StartupTimeoutError(MediaError):
    """Process spawned but the manifest did not appear within the grace period.

    The process is left running and stays reachable via get_session().
    """

    code = ErrorCode.STARTUP_TIMEOUT


class StreamStartError(MediaError):
    """Process exited before the manifest appeared."""

    code = ErrorCode.STREAM_START_FAILED


class RecordingInProgressError(MediaError):
    """A recording with the same id is already in flight."""

    code = ErrorCode.RECORDING_IN_PROGRESS


class SnapshotError(MediaError):
    """Snapshot process exited nonzero or produced no file."""

    code = ErrorCode.SNAPSHOT_FAILED


class SnapshotTimeoutError(SnapshotError):
    """Snapshot process did not finish in time and was killed."""

    code = ErrorCode.SNAPSHOT_TIMEOUT
