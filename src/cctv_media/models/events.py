"""Lifecycle notification models.

Events are emitted by the manager and its supervisor for external logging
and alerting. They carry only plain data (ids, exit codes, paths), never
process handles.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


class LifecycleEventType(str, Enum):
    """Kinds of lifecycle notifications."""

    STARTED = "started"
    STOPPED = "stopped"
    ERRORED = "errored"
    RECORDING_FINISHED = "recording_finished"
    RECORDING_ERRORED = "recording_errored"


class LifecycleEvent(BaseModel):
    """A single lifecycle notification."""

    type: LifecycleEventType

    id: str = Field(description="Stream or recording identifier")

    exit_code: int | None = None

    output_path: str | None = None

    error: str | None = None

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
