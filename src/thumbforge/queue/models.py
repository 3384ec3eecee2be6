"""Pydantic models for jobs, tasks and queue events.

This module defines the type-safe records shared by the job store, the task
queue, the worker pool and the event relay.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    """Job lifecycle states.

    State transitions:
        queued → processing       (worker picks up the task)
        queued → failed           (enqueue itself failed)
        processing → completed    (thumbnail written)
        processing → failed       (pipeline error on this attempt)
        failed → processing       (retried task re-drives the job)
        processing → processing   (redelivery after a worker crash)
    """

    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStatus(str, Enum):
    """Queue-level task states."""

    WAITING = "waiting"  # Ready now or after its backoff delay
    ACTIVE = "active"  # Leased by a worker
    COMPLETED = "completed"
    FAILED = "failed"  # Attempts exhausted or failed without retry


class TaskEventName(str, Enum):
    """Lifecycle events recorded by the task queue."""

    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class MediaKind(str, Enum):
    """Generation strategy selector, resolved once at submission."""

    IMAGE = "image"
    VIDEO = "video"


class Job(BaseModel):
    """Durable record of one thumbnail request."""

    id: str = Field(..., description="Job identifier (UUID)")
    owner_id: str = Field(..., description="Owning client")
    source_path: str = Field(..., description="Uploaded source file on disk")
    original_name: str = Field(..., description="Client-side file name")
    mime_type: str = Field(..., description="Declared mime type")
    size_bytes: int = Field(..., ge=0, description="Source size in bytes")
    status: JobStatus = Field(default=JobStatus.QUEUED)
    thumbnail_file: Optional[str] = Field(default=None, description="Set iff completed")
    error_message: Optional[str] = Field(default=None, description="Set iff failed")
    version: int = Field(default=0, ge=0, description="Optimistic concurrency counter")
    created_at: datetime
    updated_at: datetime

    class Config:
        """Pydantic configuration."""

        use_enum_values = True

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED.value, JobStatus.FAILED.value)

    def to_message(self) -> Dict[str, Any]:
        """Wire representation pushed to realtime subscribers."""
        message: Dict[str, Any] = {
            "id": self.id,
            "ownerId": self.owner_id,
            "status": self.status,
            "originalName": self.original_name,
            "mimeType": self.mime_type,
            "sizeBytes": self.size_bytes,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
        if self.thumbnail_file:
            message["thumbnailFile"] = self.thumbnail_file
        if self.error_message:
            message["error"] = self.error_message
        return message


class TaskPayload(BaseModel):
    """What a worker needs to process one job."""

    job_id: str
    source_path: str
    owner_id: str
    media_kind: MediaKind

    class Config:
        use_enum_values = True


class EnqueueOptions(BaseModel):
    """Per-task delivery policy."""

    priority: int = Field(default=1, ge=0, description="Higher = processed first")
    max_attempts: int = Field(default=3, ge=1, description="Attempts before permanent failure")
    backoff_base_s: float = Field(default=2.0, gt=0.0, description="Exponential backoff base delay")


class TaskItem(BaseModel):
    """Task row as seen by a worker after dequeue."""

    task_id: str
    job_id: str
    owner_id: str
    source_path: str
    media_kind: MediaKind
    status: TaskStatus = TaskStatus.WAITING
    priority: int = 1
    attempts_made: int = 0
    max_attempts: int = 3
    backoff_base_s: float = 2.0
    available_at: datetime
    lease_expires_at: Optional[datetime] = None
    worker_id: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        use_enum_values = True


class TaskEvent(BaseModel):
    """Persisted queue lifecycle event.

    Consumers must not treat this as a mirror of the job record; it only says
    which job to re-read.
    """

    event_id: int
    event: TaskEventName
    task_id: str
    job_id: str
    attempt: int = 0
    will_retry: bool = False
    delay_s: Optional[float] = None
    error: Optional[str] = None
    timestamp: datetime

    class Config:
        use_enum_values = True


class RetryDecision(BaseModel):
    """Outcome of ack_fail."""

    task_id: str
    attempt: int = Field(..., description="Attempts made so far, including this one")
    will_retry: bool
    delay_s: Optional[float] = None
    lost: bool = Field(default=False, description="The caller no longer held the lease; nothing changed")
