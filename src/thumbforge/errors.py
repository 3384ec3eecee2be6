"""Error taxonomy for the thumbnail pipeline.

Every error raised by the core derives from ThumbforgeError so callers at the
edges (CLI, API) can catch the whole family in one place.
"""

from typing import Optional

# Upper bound on tool diagnostics copied into a job's error message
MAX_DIAGNOSTICS_CHARS = 800


class ThumbforgeError(Exception):
    """Base class for all thumbnail pipeline errors."""


class ValidationError(ThumbforgeError):
    """Unsupported media type; rejected before a Job or Task is created."""


class EnqueueError(ThumbforgeError):
    """Queue backend could not accept a task at submission time."""


class NotFoundError(ThumbforgeError):
    """Query against an unknown job (or a thumbnail that does not exist)."""


class InvalidTransition(ThumbforgeError):
    """Requested status change is not permitted by the job state table."""

    def __init__(self, job_id: str, from_status: str, to_status: str):
        self.job_id = job_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Job {job_id}: transition {from_status} -> {to_status} is not allowed"
        )


class StaleJobError(ThumbforgeError):
    """Job record changed between read and compare-and-set write."""

    def __init__(self, job_id: str, detail: str = "record was modified concurrently"):
        self.job_id = job_id
        super().__init__(f"Job {job_id}: {detail}")


class PipelineError(ThumbforgeError):
    """Thumbnail generation failed (external tool, decode, resize or encode).

    Carries the underlying tool's diagnostic output so it can be surfaced on
    the job record. Retryable up to the task's max attempts.
    """

    def __init__(self, message: str, diagnostics: Optional[str] = None):
        self.message = message
        self.diagnostics = (diagnostics or "").strip()
        super().__init__(message)

    def user_message(self) -> str:
        """Message plus the tail of the tool diagnostics, bounded in size."""
        if not self.diagnostics:
            return self.message
        tail = self.diagnostics[-MAX_DIAGNOSTICS_CHARS:]
        return f"{self.message}: {tail}"


class LeaseLostError(ThumbforgeError):
    """Worker no longer holds the lease on the task it was delivered."""

    def __init__(self, task_id: str, worker_id: str):
        self.task_id = task_id
        self.worker_id = worker_id
        super().__init__(f"Worker {worker_id} lost the lease on task {task_id}")
