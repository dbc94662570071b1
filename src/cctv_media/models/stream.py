"""Stream and recording data models for cctv-media.

Defines Pydantic v2 models for the media process lifecycle:
- StreamStatus: Forward-only session state
- StreamOptions: Live HLS transcode parameters
- RecordingOptions: Recording container/quality/duration
- StreamSession: Pure state record of a shared live transcode
- RecordingJob: Pure state record of an exclusive recording

Process handles are never stored on these records. The manager keeps them
in a side table keyed by id, so serializing or inspecting a session never
touches a live OS resource.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Final, Literal

from pydantic import BaseModel, Field, field_validator

# ============================================================================
# Constants
# ============================================================================

RESOLUTION_PATTERN: Final[re.Pattern[str]] = re.compile(r"^\d{2,5}x\d{2,5}$")
"""WIDTHxHEIGHT, e.g. 1920x1080."""

BITRATE_PATTERN: Final[re.Pattern[str]] = re.compile(r"^\d+(\.\d+)?[kKmM]?$")
"""FFmpeg bitrate notation, e.g. 2M, 800k, 1500000."""

Preset = Literal[
    "ultrafast", "superfast", "veryfast", "faster", "fast",
    "medium", "slow", "slower", "veryslow",
]

# ============================================================================
# Status
# ============================================================================

class StreamStatus(str, Enum):
    """Lifecycle state of a live session.

    Transitions only move forward: STARTING -> RUNNING -> {STOPPED, FAILED},
    and STARTING may go straight to a terminal state.
    """

    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StreamStatus.STOPPED, StreamStatus.FAILED)

    @property
    def is_active(self) -> bool:
        return self in (StreamStatus.STARTING, StreamStatus.RUNNING)


ALLOWED_TRANSITIONS: Final[dict[StreamStatus, frozenset[StreamStatus]]] = {
    StreamStatus.STARTING: frozenset({StreamStatus.RUNNING, StreamStatus.STOPPED, StreamStatus.FAILED}),
    StreamStatus.RUNNING: frozenset({StreamStatus.STOPPED, StreamStatus.FAILED}),
    StreamStatus.STOPPED: frozenset(),
    StreamStatus.FAILED: frozenset(),
}
"""Legal status transitions. Terminal states have no successors."""


# ============================================================================
# Options
# ============================================================================

class StreamOptions(BaseModel):
    """Encoding parameters for a live HLS transcode."""

    output_format: Literal["hls"] = Field(
        default="hls",
        description="Live output container (HLS playlist + segments)"
    )

    preset: Preset = Field(
        default="faster",
        description="libx264 encoding preset"
    )

    resolution: str | None = Field(
        default=None,
        description="Explicit output size",
        examples=["1280x720"]
    )

    bitrate: str | None = Field(
        default=None,
        description="Target video bitrate",
        examples=["2M", "800k"]
    )

    framerate: int | None = Field(
        default=None,
        ge=1,
        le=60,
        description="Output frame rate"
    )

    segment_time: int = Field(
        default=2,
        ge=1,
        le=30,
        description="HLS segment duration in seconds"
    )

    playlist_size: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Segments kept in the live playlist"
    )

    @field_validator("resolution")
    @classmethod
    def validate_resolution(cls, value: str | None) -> str | None:
        if value is not None and not RESOLUTION_PATTERN.match(value):
            raise ValueError("Resolution must look like WIDTHxHEIGHT")
        return value

    @field_validator("bitrate")
    @classmethod
    def validate_bitrate(cls, value: str | None) -> str | None:
        if value is not None and not BITRATE_PATTERN.match(value):
            raise ValueError("Bitrate must look like 2M, 800k or 1500000")
        return value


class RecordingOptions(BaseModel):
    """Parameters for an exclusive recording."""

    format: Literal["mp4", "mkv", "avi"] = Field(
        default="mp4",
        description="Output container"
    )

    quality: Literal["low", "medium", "high", "uhd"] = Field(
        default="medium",
        description="Quality level mapped to an x264 CRF value"
    )

    duration: int | None = Field(
        default=None,
        ge=1,
        le=86400,
        description="Recording length in seconds (open-ended if omitted)"
    )


# ============================================================================
# State Records
# ============================================================================

class StreamSession(BaseModel):
    """One live transcode tracked by the stream registry."""

    id: str = Field(description="Caller-supplied stream identifier")

    source_uri: str = Field(description="Source address, immutable for the session")

    status: StreamStatus = Field(default=StreamStatus.STARTING)

    started_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Spawn time (UTC)"
    )

    output_locator: str = Field(description="Public path of the HLS manifest")

    viewer_count: int = Field(default=1, ge=0)

    pid: int | None = Field(default=None, description="OS process id of the transcoder")

    exit_code: int | None = Field(default=None)

    last_error: str | None = Field(
        default=None,
        description="Last diagnostic line seen before a failure"
    )


class RecordingJob(BaseModel):
    """One exclusive recording tracked by the recording registry."""

    id: str

    source_uri: str

    output_path: Path

    duration: int | None = None

    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    pid: int | None = None
