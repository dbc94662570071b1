"""Process bootstrap for the media manager.

The manager is never a hidden global. Whatever process embeds it (an HTTP
controller layer, the CLI, a test) constructs exactly one through
media_lifespan() and passes it to the code that needs it.

Example:
    async with media_lifespan() as manager:
        locator = await manager.acquire("cam1", camera.rtsp_url)
        ...

Lifespan:
    Startup:
        1. Load settings (YAML + environment)
        2. Ensure output roots exist
        3. Construct MediaManager
    Shutdown:
        1. Stop every live session and recording concurrently
        2. Remove stream artifacts, cancel background tasks

Logging Strategy:
    INFO  - Lifecycle banners, resolved directories
    WARN  - Output roots that could not be created
    ERROR - Shutdown failures with stack traces
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from .config_io import MediaSettings, load_settings
from .services.media_manager import MediaManager

logger = logging.getLogger(__name__)

# ============================================================================
# Lifespan
# ============================================================================

@asynccontextmanager
async def media_lifespan(
    settings: MediaSettings | None = None,
    config_path: str | Path | None = None,
) -> AsyncGenerator[MediaManager, None]:
    """Own a MediaManager for the duration of the block.

    Args:
        settings: Ready-made settings (skips loading)
        config_path: YAML file to load when settings is not given

    Yields:
        The constructed manager
    """
    # ========================================================================
    # STARTUP
    # ========================================================================

    logger.info("=" * 80)
    logger.info("cctv-media starting...")
    logger.info("=" * 80)

    if settings is None:
        settings = load_settings(config_path)

    for directory in (settings.streams_dir, settings.recordings_dir, settings.thumbnails_dir):
        try:
            directory.mkdir(parents=True, exist_ok=True)
            logger.info(f"Output root: {directory}")
        except OSError as e:
            logger.warning(f"Cannot create {directory}: {e}")

    manager = MediaManager(settings)

    logger.info("cctv-media ready")

    # ========================================================================
    # RUNNING
    # ========================================================================

    try:
        yield manager

    # ========================================================================
    # SHUTDOWN
    # ========================================================================

    finally:
        logger.info("=" * 80)
        logger.info("cctv-media shutting down...")
        logger.info("=" * 80)

        try:
            await manager.shutdown()
        except Exception as e:
            logger.error(f"Shutdown error: {e}", exc_info=True)

        logger.info("cctv-media shutdown complete")
