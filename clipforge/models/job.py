"""Domain types for render jobs.

Jobs are frozen dataclasses. The job manager never mutates a stored job in
place; each transition stores a new value built with ``dataclasses.replace``,
so any job read from the store is a consistent snapshot.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


# ============================================================================
# Enums
# ============================================================================


class JobStatus(Enum):
    """Render job status."""

    QUEUED = "queued"
    RESOLVING = "resolving"
    BUILDING = "building"
    ENCODING = "encoding"
    PUBLISHING = "publishing"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.ERROR)


# Forward path through the pipeline; ERROR is reachable from any non-terminal state.
NEXT_STATUS: dict[JobStatus, JobStatus] = {
    JobStatus.QUEUED: JobStatus.RESOLVING,
    JobStatus.RESOLVING: JobStatus.BUILDING,
    JobStatus.BUILDING: JobStatus.ENCODING,
    JobStatus.ENCODING: JobStatus.PUBLISHING,
    JobStatus.PUBLISHING: JobStatus.DONE,
}

# Coarse progress reported to pollers when a job enters each state
STATUS_PROGRESS: dict[JobStatus, int] = {
    JobStatus.QUEUED: 0,
    JobStatus.RESOLVING: 10,
    JobStatus.BUILDING: 40,
    JobStatus.ENCODING: 50,
    JobStatus.PUBLISHING: 90,
    JobStatus.DONE: 100,
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Check whether a job in ``current`` may move to ``target``."""
    if current.is_terminal:
        return False
    if target == JobStatus.ERROR:
        return True
    return NEXT_STATUS.get(current) == target


class OutputFormat(Enum):
    """Target canvas orientation."""

    VERTICAL = "vertical"
    HORIZONTAL = "horizontal"

    @property
    def canvas_size(self) -> tuple[int, int]:
        """(width, height) of the output canvas."""
        return CANVAS_SIZES[self]

    @classmethod
    def parse(cls, value: str) -> "OutputFormat":
        """Parse a format name, accepting platform aliases (tiktok, reels, youtube)."""
        key = value.strip().lower()
        if key in FORMAT_ALIASES:
            return FORMAT_ALIASES[key]
        return cls(key)


CANVAS_SIZES: dict[OutputFormat, tuple[int, int]] = {
    OutputFormat.VERTICAL: (1080, 1920),
    OutputFormat.HORIZONTAL: (1920, 1080),
}

FORMAT_ALIASES: dict[str, OutputFormat] = {
    "tiktok": OutputFormat.VERTICAL,
    "reels": OutputFormat.VERTICAL,
    "youtube": OutputFormat.HORIZONTAL,
}


# ============================================================================
# Dataclasses
# ============================================================================


@dataclass(frozen=True)
class ClipRef:
    """One input clip: where it lives, where it goes in the edit, and its trim."""

    reference: str
    order: float
    start_time: Optional[float] = None  # seconds into the source
    end_time: Optional[float] = None  # seconds into the source


@dataclass(frozen=True)
class MusicRef:
    """Background audio applied to the whole render."""

    reference: str
    volume: float = 1.0


@dataclass(frozen=True)
class RenderRequest:
    """A validated-shape render request as handed to the job manager."""

    clips: tuple[ClipRef, ...]
    format: OutputFormat
    duration: float  # seconds; hard cap on the output length
    music: Optional[MusicRef] = None


@dataclass(frozen=True)
class ResolvedAsset:
    """A reference materialized as a local file inside a job's working directory."""

    path: str
    size: int
    job_id: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Job:
    """Render job snapshot."""

    id: str
    clips: tuple[ClipRef, ...]
    format: OutputFormat
    duration: float
    music: Optional[MusicRef] = None
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    error_code: Optional[str] = None
    error_detail: Optional[str] = None
    output_url: Optional[str] = None
    output_size: Optional[int] = None
    output_duration_ms: Optional[int] = None
    created_at: datetime = field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "job_id": self.id,
            "status": self.status.value,
            "progress": self.progress,
            "format": self.format.value,
            "duration": self.duration,
            "clip_count": len(self.clips),
            "has_music": self.music is not None,
            "output_url": self.output_url,
            "output_size": self.output_size,
            "output_duration_ms": self.output_duration_ms,
            "error_code": self.error_code,
            "error_detail": self.error_detail,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
