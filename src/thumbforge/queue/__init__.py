"""Durable job store, task queue and queue events.

The worker pool lives in .worker and is imported from there; it depends on
the media pipeline, which itself imports these models.
"""

from .backends import JobStore, TaskQueue
from .connection import SQLiteHandle
from .events import QueueEvents, Subscription
from .job_store import ALLOWED_TRANSITIONS, SQLiteJobStore
from .models import (
    EnqueueOptions,
    Job,
    JobStatus,
    MediaKind,
    RetryDecision,
    TaskEvent,
    TaskEventName,
    TaskItem,
    TaskPayload,
    TaskStatus,
)
from .sqlite_backend import SQLiteTaskQueue, StallReport, backoff_delay

__all__ = [
    "JobStore",
    "TaskQueue",
    "SQLiteHandle",
    "QueueEvents",
    "Subscription",
    "ALLOWED_TRANSITIONS",
    "SQLiteJobStore",
    "EnqueueOptions",
    "Job",
    "JobStatus",
    "MediaKind",
    "RetryDecision",
    "TaskEvent",
    "TaskEventName",
    "TaskItem",
    "TaskPayload",
    "TaskStatus",
    "SQLiteTaskQueue",
    "StallReport",
    "backoff_delay",
]
