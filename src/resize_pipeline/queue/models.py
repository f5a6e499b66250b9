"""Pydantic models for queue, status and image record data structures.

This module defines the type-safe models shared by every backend.
Timestamps are timezone-aware UTC and stored as fixed-width ISO strings so
that lexical comparison in SQLite matches chronological order.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..resolutions import ORIGINAL


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC ISO string."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


class JobStatus(str, Enum):
    """Lifecycle states shared by job status records and image records.

    State transitions:
        pending    → processing   (worker dequeues)
        processing → processing   (redelivery after a crashed worker)
        processing → complete     (all resolutions stored)
        processing → failed       (any step raised)
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETE, JobStatus.FAILED)


ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.PROCESSING, JobStatus.COMPLETE, JobStatus.FAILED},
    JobStatus.COMPLETE: set(),
    JobStatus.FAILED: set(),
}


def can_transition(from_state: JobStatus, to_state: JobStatus) -> bool:
    return to_state in ALLOWED_TRANSITIONS[JobStatus(from_state)]


class Job(BaseModel):
    """Immutable resize request created by the producer."""

    model_config = ConfigDict(frozen=True)

    job_id: str = Field(..., description="Unique job identifier (UUID)")
    image_id: str = Field(..., description="Image record this job resizes")
    user_id: str = Field(..., description="Owner of the image")
    original_path: str = Field(..., description="Object key of the uploaded original")
    original_name: str = Field(..., description="Client-side file name (extension source)")
    enqueued_at: datetime = Field(default_factory=utcnow, description="Queue time")


class JobStatusRecord(BaseModel):
    """Ephemeral lifecycle state of a job, garbage-collected by TTL."""

    job_id: str
    status: JobStatus
    expires_at: datetime


class ResolutionResult(BaseModel):
    """One stored variant of an image."""

    url: str
    width: int = Field(..., ge=0)
    height: int = Field(..., ge=0)
    size_label: str = Field(..., description="Human readable byte size, e.g. 12.34KB")


class ImageRecord(BaseModel):
    """Durable per-image record owned by the pipeline."""

    image_id: str
    user_id: str
    original_name: str
    status: JobStatus = JobStatus.PENDING
    job_id: Optional[str] = Field(None, description="Job that last entered processing")
    sizes: Dict[str, ResolutionResult] = Field(default_factory=dict)
    uploaded_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    def has_all_sizes(self, resolution_names) -> bool:
        expected = set(resolution_names) | {ORIGINAL}
        return expected.issubset(self.sizes.keys())


class StateTransition(BaseModel):
    """Audit log entry for image record state changes."""

    image_id: str
    from_state: Optional[JobStatus] = None
    to_state: JobStatus
    timestamp: datetime = Field(default_factory=utcnow)
    worker_id: Optional[str] = None
    error_snippet: Optional[str] = None
