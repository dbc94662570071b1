"""cctv-media: lifecycle manager for FFmpeg processes on live camera feeds."""
from .config_io import MediaSettings, load_settings
from .errors import (
    ErrorCode,
    InvalidRequestError,
    ManagerClosedError,
    MediaError,
    RecordingInProgressError,
    SnapshotError,
    SnapshotTimeoutError,
    SpawnError,
    StartupTimeoutError,
    StreamStartError,
)
from .main import media_lifespan
from .models.events import LifecycleEvent, LifecycleEventType
from .models.stream import RecordingJob, RecordingOptions, StreamOptions, StreamSession, StreamStatus
from .services.media_manager import MediaManager

__version__ = "1.0.0"

__all__ = [
    "ErrorCode",
    "InvalidRequestError",
    "LifecycleEvent",
    "LifecycleEventType",
    "ManagerClosedError",
    "MediaError",
    "MediaManager",
    "MediaSettings",
    "RecordingInProgressError",
    "RecordingJob",
    "RecordingOptions",
    "SnapshotError",
    "SnapshotTimeoutError",
    "SpawnError",
    "StartupTimeoutError",
    "StreamOptions",
    "StreamSession",
    "StreamStartError",
    "StreamStatus",
    "load_settings",
    "media_lifespan",
]
