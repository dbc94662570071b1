"""YAML + environment configuration for the media manager.

Settings resolution order (later wins):
    1. Built-in defaults (MediaSettings field defaults)
    2. YAML file: explicit path, else $CCTV_MEDIA_CONFIG, else none
    3. Environment overrides (FFMPEG_BINARY, STREAMS_DIR, ...)

File Format:
    media:
      ffmpeg_binary: /usr/bin/ffmpeg
      streams_dir: /var/lib/cctv/streams
      startup_grace: 3.0

Recovery:
    A missing, unreadable or invalid file never prevents startup. The
    problem is logged and defaults are used, so a broken config cannot take
    the CCTV API down.

Logging Strategy:
    DEBUG - Resolved values
    INFO  - Config source selection
    WARN  - Invalid file contents, ignored keys
    ERROR - YAML parsing, I/O failures
"""
from __future__ import annotations

import io
import logging
import os
from pathlib import Path
from typing import Any, Final

import yaml
from pydantic import BaseModel, Field, ValidationError

from .config.ffmpeg_defaults import HLS_PLAYLIST_NAME

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================

CONFIG_ENV_VAR: Final[str] = "CCTV_MEDIA_CONFIG"
"""Environment variable naming the YAML settings file."""

MEDIA_KEY: Final[str] = "media"
"""Top-level YAML key holding manager settings."""

ENV_OVERRIDES: Final[dict[str, str]] = {
    "FFMPEG_BINARY": "ffmpeg_binary",
    "STREAMS_DIR": "streams_dir",
    "RECORDINGS_DIR": "recordings_dir",
    "THUMBNAILS_DIR": "thumbnails_dir",
}
"""Environment variable -> settings field."""

# ============================================================================
# Settings Model
# ============================================================================

class MediaSettings(BaseModel):
    """Runtime settings for MediaManager and ProcessLauncher."""

    ffmpeg_binary: str = Field(default="ffmpeg", description="FFmpeg executable")

    streams_dir: Path = Field(
        default_factory=lambda: Path.cwd() / "public" / "streams",
        description="Root of per-stream HLS output directories"
    )

    recordings_dir: Path = Field(
        default_factory=lambda: Path.cwd() / "recordings",
        description="Default recording destination"
    )

    thumbnails_dir: Path = Field(
        default_factory=lambda: Path.cwd() / "public" / "thumbnails",
        description="Default snapshot destination"
    )

    public_prefix: str = Field(
        default="/streams",
        description="URL prefix clients use to reach streams_dir"
    )

    startup_grace: float = Field(default=3.0, gt=0, description="Seconds to wait for the manifest")
    stop_grace: float = Field(default=5.0, gt=0, description="SIGTERM -> SIGKILL window")
    cleanup_delay: float = Field(default=5.0, ge=0, description="Delay before artifact removal")
    readiness_poll_interval: float = Field(default=0.25, gt=0)
    probe_timeout: float = Field(default=10.0, gt=0)
    snapshot_timeout: float = Field(default=10.0, gt=0)

    rtsp_transport: str | None = Field(default="tcp", description="tcp, udp or None")

    def playlist_path(self, stream_id: str) -> Path:
        """On-disk manifest path for a stream."""
        return self.streams_dir / stream_id / HLS_PLAYLIST_NAME

    def output_locator(self, stream_id: str) -> str:
        """Caller-facing manifest path for a stream."""
        return f"{self.public_prefix.rstrip('/')}/{stream_id}/{HLS_PLAYLIST_NAME}"


# ============================================================================
# Loading
# ============================================================================

def _read_yaml(path: Path) -> dict[str, Any]:
    """Read the media mapping from a YAML file, {} on any problem."""
    if not path.exists():
        logger.warning(f"Config file not found: {path}, using defaults")
        return {}

    try:
        with io.open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        logger.error(f"YAML parsing error in {path}: {e}", exc_info=True)
        return {}
    except OSError as e:
        logger.error(f"Config read error for {path}: {e}", exc_info=True)
        return {}

    if not isinstance(data, dict):
        logger.warning(f"Invalid config format in {path} (expected mapping), ignoring")
        return {}

    media = data.get(MEDIA_KEY, {})
    if not isinstance(media, dict):
        logger.warning(f"Invalid '{MEDIA_KEY}' section in {path} (expected mapping), ignoring")
        return {}

    unknown = set(media) - set(MediaSettings.model_fields)
    if unknown:
        logger.warning(f"Ignoring unknown config keys: {sorted(unknown)}")
        media = {k: v for k, v in media.items() if k not in unknown}

    return media


def load_settings(path: str | Path | None = None) -> MediaSettings:
    """Load MediaSettings from YAML and environment.

    Args:
        path: Explicit YAML path (overrides $CCTV_MEDIA_CONFIG)

    Returns:
        Validated settings. Falls back to defaults if the file is invalid.
    """
    raw: dict[str, Any] = {}

    config_path = path or os.getenv(CONFIG_ENV_VAR)
    if config_path:
        logger.info(f"Config: {config_path}")
        raw = _read_yaml(Path(config_path))
    else:
        logger.info("Config: defaults (no config file)")

    for env_name, field_name in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            raw[field_name] = value
            logger.debug(f"Config override from {env_name}")

    try:
        settings = MediaSettings(**raw)
    except ValidationError as e:
        logger.warning(f"Invalid settings, using defaults: {e}")
        settings = MediaSettings()

    logger.debug(
        f"Settings: ffmpeg={settings.ffmpeg_binary}, streams_dir={settings.streams_dir}, "
        f"recordings_dir={settings.recordings_dir}, startup_grace={settings.startup_grace}s, "
        f"stop_grace={settings.stop_grace}s"
    )
    return settings
