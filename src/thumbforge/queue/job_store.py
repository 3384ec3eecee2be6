"""SQLite implementation of the job store.

Job records live in their own database file, separate from the task queue.
Writes are compare-and-set on (id, status, version) so a
concurrent status write is never silently overwritten.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..errors import InvalidTransition, NotFoundError, StaleJobError
from .backends import JobStore
from .connection import SQLiteHandle, now_iso
from .models import Job, JobStatus

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    source_path TEXT NOT NULL,
    original_name TEXT NOT NULL,
    mime_type TEXT NOT NULL,
    size_bytes INTEGER NOT NULL,
    status TEXT NOT NULL,
    thumbnail_file TEXT,
    error_message TEXT,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_jobs_owner_created ON jobs(owner_id, created_at DESC);

-- Status audit trail
CREATE TABLE IF NOT EXISTS job_transitions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_id TEXT NOT NULL,
    from_state TEXT,
    to_state TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    error_snippet TEXT,
    FOREIGN KEY(job_id) REFERENCES jobs(id)
);

CREATE INDEX IF NOT EXISTS idx_job_transitions_job ON job_transitions(job_id, id);
"""

# Permitted status changes. Jobs are created queued, so pending has no
# outgoing edge. The last two rows exist for redelivery: a retried task
# re-drives a failed job, and a task redelivered after a worker crash finds
# its job still marked processing.
ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: set(),
    JobStatus.QUEUED: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PROCESSING},
    JobStatus.FAILED: {JobStatus.PROCESSING},
    JobStatus.COMPLETED: set(),
}


def _transition_fields(
    job_id: str,
    new_status: JobStatus,
    thumbnail_file: Optional[str],
    error_message: Optional[str],
) -> Dict[str, Optional[str]]:
    """Enforce thumbnail_file iff completed and error_message iff failed."""
    if new_status == JobStatus.COMPLETED:
        if not thumbnail_file:
            raise ValueError(f"Job {job_id}: completed requires a thumbnail_file")
        return {"thumbnail_file": thumbnail_file, "error_message": None}
    if new_status == JobStatus.FAILED:
        if not error_message or not error_message.strip():
            raise ValueError(f"Job {job_id}: failed requires a non-empty error_message")
        return {"thumbnail_file": None, "error_message": error_message}
    return {"thumbnail_file": None, "error_message": None}


class SQLiteJobStore(JobStore):
    """Job store backed by sqlite-utils.

    Features:
    - Indexed newest-first listing per owner
    - Compare-and-set transitions with a version counter
    - Transition audit log
    """

    def __init__(self, handle: SQLiteHandle):
        self.handle = handle
        self.handle.ensure_schema(SCHEMA_SQL)

    @property
    def db(self):
        return self.handle.db

    def create(
        self,
        owner_id: str,
        source_path: str,
        original_name: str,
        mime_type: str,
        size_bytes: int,
    ) -> Job:
        job_id = str(uuid.uuid4())
        now = now_iso()

        with self.db.conn:
            self.db.execute(
                """
                INSERT INTO jobs (
                    id, owner_id, source_path, original_name, mime_type,
                    size_bytes, status, version, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    job_id,
                    owner_id,
                    str(source_path),
                    original_name,
                    mime_type,
                    int(size_bytes),
                    JobStatus.QUEUED.value,
                    now,
                    now,
                ),
            )
            self._log_transition(job_id, None, JobStatus.QUEUED.value, now)

        logger.info("Created job %s for owner %s (%s)", job_id, owner_id, original_name)
        return self.get(job_id)

    def transition(
        self,
        job_id: str,
        new_status: JobStatus,
        thumbnail_file: Optional[str] = None,
        error_message: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> Job:
        new_status = JobStatus(new_status)
        current = self.get(job_id)
        current_status = JobStatus(current.status)

        if expected_version is not None and current.version != expected_version:
            raise StaleJobError(
                job_id, f"expected version {expected_version}, found {current.version}"
            )

        if new_status not in ALLOWED_TRANSITIONS[current_status]:
            raise InvalidTransition(job_id, current_status.value, new_status.value)

        fields = _transition_fields(job_id, new_status, thumbnail_file, error_message)
        now = now_iso()

        with self.db.conn:
            cursor = self.db.execute(
                """
                UPDATE jobs
                SET status = ?,
                    thumbnail_file = ?,
                    error_message = ?,
                    updated_at = ?,
                    version = version + 1
                WHERE id = ? AND status = ? AND version = ?
                """,
                (
                    new_status.value,
                    fields["thumbnail_file"],
                    fields["error_message"],
                    now,
                    job_id,
                    current_status.value,
                    current.version,
                ),
            )
            if cursor.rowcount == 0:
                raise StaleJobError(job_id)

            self._log_transition(
                job_id, current_status.value, new_status.value, now, fields["error_message"]
            )

        logger.debug("Job %s: %s -> %s", job_id, current_status.value, new_status.value)
        return self.get(job_id)

    def get(self, job_id: str) -> Job:
        rows = list(self.db["jobs"].rows_where("id = ?", [job_id]))
        if not rows:
            raise NotFoundError(f"Job not found: {job_id}")
        return self._row_to_job(rows[0])

    def list_by_owner(self, owner_id: str) -> List[Job]:
        rows = self.db["jobs"].rows_where(
            "owner_id = ?", [owner_id], order_by="created_at DESC, rowid DESC"
        )
        return [self._row_to_job(row) for row in rows]

    def transitions(self, job_id: str) -> List[Dict[str, Any]]:
        """Audit trail for one job, oldest first."""
        return list(
            self.db["job_transitions"].rows_where("job_id = ?", [job_id], order_by="id")
        )

    def _row_to_job(self, row: Dict[str, Any]) -> Job:
        return Job(
            id=row["id"],
            owner_id=row["owner_id"],
            source_path=row["source_path"],
            original_name=row["original_name"],
            mime_type=row["mime_type"],
            size_bytes=row["size_bytes"],
            status=JobStatus(row["status"]),
            thumbnail_file=row["thumbnail_file"],
            error_message=row["error_message"],
            version=row["version"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _log_transition(
        self,
        job_id: str,
        from_state: Optional[str],
        to_state: str,
        timestamp: str,
        error: Optional[str] = None,
    ) -> None:
        self.db.execute(
            """
            INSERT INTO job_transitions (job_id, from_state, to_state, timestamp, error_snippet)
            VALUES (?, ?, ?, ?, ?)
            """,
            (job_id, from_state, to_state, timestamp, error[:200] if error else None),
        )
