"""Abstract base classes for the job store and the task queue.

These abstractions keep the worker pool and the event relay independent of
the storage engine. The shipped implementations are SQLite-based; tests
substitute doubles through the same interfaces.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

if TYPE_CHECKING:
    from .models import (
        EnqueueOptions,
        Job,
        JobStatus,
        RetryDecision,
        TaskItem,
        TaskPayload,
    )


class JobStore(ABC):
    """Durable source of truth for job records.

    Implementations must provide:
    - Status changes validated against the job state table
    - Compare-and-set writes (no blind overwrite of a concurrent transition)
    - Newest-first listing per owner
    """

    @abstractmethod
    def create(
        self,
        owner_id: str,
        source_path: str,
        original_name: str,
        mime_type: str,
        size_bytes: int,
    ) -> "Job":
        """Insert a new job in the 'queued' state."""
        pass

    @abstractmethod
    def transition(
        self,
        job_id: str,
        new_status: "JobStatus",
        thumbnail_file: Optional[str] = None,
        error_message: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> "Job":
        """Apply a status change plus its associated fields.

        Args:
            job_id: Job identifier
            new_status: Target status
            thumbnail_file: Required when moving to 'completed'
            error_message: Required when moving to 'failed'
            expected_version: Optional optimistic-concurrency guard

        Raises:
            NotFoundError: Unknown job
            InvalidTransition: Change not permitted from the current status
            StaleJobError: Record changed between read and write
        """
        pass

    @abstractmethod
    def get(self, job_id: str) -> "Job":
        """Fetch a job; raises NotFoundError if unknown."""
        pass

    @abstractmethod
    def list_by_owner(self, owner_id: str) -> List["Job"]:
        """All jobs of an owner, newest first."""
        pass


class TaskQueue(ABC):
    """At-least-once work queue with priority, retries and leases.

    Implementations must provide:
    - Atomic dequeue (two workers never claim the same task)
    - Exponential backoff between attempts
    - Redelivery of tasks whose lease expired
    - Lifecycle events (active, completed, failed) carrying the job id
    """

    @abstractmethod
    def enqueue(self, payload: "TaskPayload", options: "EnqueueOptions") -> str:
        """Add a task; returns its id. Raises EnqueueError on backend failure."""
        pass

    @abstractmethod
    def dequeue(self, worker_id: str) -> Optional["TaskItem"]:
        """Claim the next ready task, or None if nothing is ready."""
        pass

    @abstractmethod
    def mark_started(self, task_id: str, worker_id: Optional[str] = None) -> bool:
        """Record the 'active' event once the worker has taken ownership.

        Returns False, recording nothing, if worker_id no longer holds the lease.
        """
        pass

    @abstractmethod
    def ack_success(self, task_id: str, worker_id: Optional[str] = None) -> bool:
        """Mark the task completed and record the 'completed' event.

        Returns False, changing nothing, if worker_id no longer holds the lease.
        """
        pass

    @abstractmethod
    def ack_fail(
        self, task_id: str, error: str, retry: bool = True, worker_id: Optional[str] = None
    ) -> "RetryDecision":
        """Count a failed attempt and either schedule a retry or fail for good.

        Implementation notes:
        - delay = backoff_base_s * 2 ** attempt (attempt is zero-based)
        - Records a 'failed' event for every failed attempt
        - A caller that lost its lease gets a decision with lost=True
        """
        pass

    @abstractmethod
    def heartbeat(self, task_id: str, worker_id: Optional[str] = None) -> bool:
        """Extend the lease of an active task; False once the lease is lost."""
        pass

    @abstractmethod
    def recover_stalled(
        self, on_exhausted: Optional[Callable[["TaskItem"], None]] = None
    ) -> "object":
        """Redeliver tasks whose lease expired; fail those out of attempts."""
        pass

    @abstractmethod
    def counts(self) -> Dict[str, int]:
        """Task counts by status."""
        pass
