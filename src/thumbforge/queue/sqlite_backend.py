"""SQLite implementation of the task queue.

This module provides the local-first, crash-safe queue using:
- sqlite-utils for schema management and row access
- WAL mode and a busy timeout (see connection.SQLiteHandle)
- BEGIN IMMEDIATE transactions for atomic dequeue
- Leases with heartbeats for crash-triggered redelivery
- Exponential backoff between attempts
- Lifecycle events written in the same transaction as the state change
"""

import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..errors import EnqueueError, NotFoundError
from .backends import TaskQueue
from .connection import SQLiteHandle, now_iso
from .models import (
    EnqueueOptions,
    MediaKind,
    RetryDecision,
    TaskEventName,
    TaskItem,
    TaskPayload,
    TaskStatus,
)

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS tasks (
    task_id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    source_path TEXT NOT NULL,
    media_kind TEXT NOT NULL,
    status TEXT NOT NULL,
    priority INTEGER DEFAULT 1,
    attempts_made INTEGER DEFAULT 0,
    max_attempts INTEGER DEFAULT 3,
    backoff_base_s REAL DEFAULT 2.0,
    available_at TEXT NOT NULL,
    lease_expires_at TEXT,
    worker_id TEXT,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    finished_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_tasks_ready ON tasks(status, priority DESC, available_at ASC, created_at ASC);
CREATE INDEX IF NOT EXISTS idx_tasks_job ON tasks(job_id);

-- Lifecycle event log, tailed by QueueEvents
CREATE TABLE IF NOT EXISTS task_events (
    event_id INTEGER PRIMARY KEY AUTOINCREMENT,
    event TEXT NOT NULL,
    task_id TEXT NOT NULL,
    job_id TEXT NOT NULL,
    attempt INTEGER DEFAULT 0,
    will_retry INTEGER DEFAULT 0,
    delay_s REAL,
    error TEXT,
    timestamp TEXT NOT NULL
);
"""

# Task error text kept on the row and in events
MAX_ERROR_CHARS = 1000


def backoff_delay(base_s: float, attempt: int) -> float:
    """Delay before the next attempt after zero-based attempt `attempt` failed."""
    return base_s * (2 ** attempt)


@dataclass
class StallReport:
    """Result of one recover_stalled() sweep."""

    requeued: List[str] = field(default_factory=list)
    exhausted: List[str] = field(default_factory=list)


class SQLiteTaskQueue(TaskQueue):
    """SQLite-based task queue with atomic dequeue operations.

    Concurrency safety:
    - BEGIN IMMEDIATE takes the write lock at transaction start, so two
      workers can never select the same waiting task
    - Lock contention beyond the busy timeout is retried with backoff
    """

    def __init__(
        self,
        handle: SQLiteHandle,
        visibility_timeout_s: float = 300.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """Initialize queue backend.

        Args:
            handle: SQLite handle for the queue database
            visibility_timeout_s: Lease length; an active task whose lease
                expires is considered abandoned and is redelivered
            clock: Time source (injectable for tests)
        """
        self.handle = handle
        self.visibility_timeout_s = visibility_timeout_s
        self.clock = clock
        self.handle.ensure_schema(SCHEMA_SQL)

    @property
    def db(self):
        return self.handle.db

    def enqueue(self, payload: TaskPayload, options: Optional[EnqueueOptions] = None) -> str:
        options = options or EnqueueOptions()
        task_id = str(uuid.uuid4())
        now = now_iso(self.clock())

        try:
            with self.db.conn:
                self.db.execute(
                    """
                    INSERT INTO tasks (
                        task_id, job_id, owner_id, source_path, media_kind, status,
                        priority, attempts_made, max_attempts, backoff_base_s,
                        available_at, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?)
                    """,
                    (
                        task_id,
                        payload.job_id,
                        payload.owner_id,
                        payload.source_path,
                        MediaKind(payload.media_kind).value,
                        TaskStatus.WAITING.value,
                        options.priority,
                        options.max_attempts,
                        options.backoff_base_s,
                        now,
                        now,
                        now,
                    ),
                )
        except sqlite3.Error as e:
            raise EnqueueError(f"Queue backend unavailable: {e}") from e

        logger.info("Enqueued task %s for job %s", task_id, payload.job_id)
        return task_id

    def dequeue(self, worker_id: str) -> Optional[TaskItem]:
        """Atomically claim the next ready task.

        Atomicity: BEGIN IMMEDIATE + UPDATE...RETURNING
        Retry logic: Exponential backoff on database lock
        """
        return self._dequeue_with_retry(worker_id, max_retries=3)

    def _dequeue_with_retry(self, worker_id: str, max_retries: int = 3) -> Optional[TaskItem]:
        for attempt in range(max_retries):
            try:
                return self._claim(worker_id)
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e).lower() and attempt < max_retries - 1:
                    # 100ms, 200ms, 400ms
                    time.sleep(0.1 * (2 ** attempt))
                    continue
                raise
        return None

    def _claim(self, worker_id: str) -> Optional[TaskItem]:
        conn = self.db.conn
        now = self.clock()
        lease = now + timedelta(seconds=self.visibility_timeout_s)

        with conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                cursor = conn.execute(
                    """
                    UPDATE tasks
                    SET status = ?,
                        worker_id = ?,
                        lease_expires_at = ?,
                        updated_at = ?
                    WHERE task_id = (
                        SELECT task_id FROM tasks
                        WHERE status = ? AND available_at <= ?
                        ORDER BY priority DESC, available_at ASC, created_at ASC, rowid ASC
                        LIMIT 1
                    )
                    RETURNING *
                    """,
                    (
                        TaskStatus.ACTIVE.value,
                        worker_id,
                        now_iso(lease),
                        now_iso(now),
                        TaskStatus.WAITING.value,
                        now_iso(now),
                    ),
                )
                row = cursor.fetchone()
                columns = [d[0] for d in cursor.description] if row else []
                conn.commit()
            except Exception:
                conn.rollback()
                raise

        if not row:
            return None

        task = self._row_to_task(dict(zip(columns, row)))
        logger.debug("Worker %s claimed task %s (job %s)", worker_id, task.task_id, task.job_id)
        return task

    def mark_started(self, task_id: str, worker_id: Optional[str] = None) -> bool:
        """Record the 'active' event if the caller still holds the lease."""
        task = self.get_task(task_id)
        guard, guard_params = self._lease_guard(worker_id)
        with self.db.conn:
            cursor = self.db.execute(
                f"UPDATE tasks SET updated_at = ? WHERE task_id = ? AND {guard}",
                (now_iso(self.clock()), task_id, *guard_params),
            )
            if not cursor.rowcount:
                self._log_lost_lease("start", task, worker_id)
                return False
            self._record_event(TaskEventName.ACTIVE, task, attempt=task.attempts_made + 1)
        return True

    def ack_success(self, task_id: str, worker_id: Optional[str] = None) -> bool:
        task = self.get_task(task_id)
        now = now_iso(self.clock())
        guard, guard_params = self._lease_guard(worker_id)

        with self.db.conn:
            cursor = self.db.execute(
                f"""
                UPDATE tasks
                SET status = ?,
                    finished_at = ?,
                    updated_at = ?,
                    lease_expires_at = NULL
                WHERE task_id = ? AND {guard}
                """,
                (TaskStatus.COMPLETED.value, now, now, task_id, *guard_params),
            )
            if not cursor.rowcount:
                self._log_lost_lease("success ack", task, worker_id)
                return False
            self._record_event(TaskEventName.COMPLETED, task, attempt=task.attempts_made + 1)
        return True

    def ack_fail(
        self, task_id: str, error: str, retry: bool = True, worker_id: Optional[str] = None
    ) -> RetryDecision:
        """Count a failed attempt.

        Retry logic:
        - If retry=True and attempts < max_attempts: back to 'waiting' after
          backoff_base_s * 2 ** attempt
        - Otherwise: 'failed' (terminal)

        Only the current lease holder can fail a task. A late ack from a
        worker whose lease expired changes nothing and comes back with
        lost=True.
        """
        task = self.get_task(task_id)
        failed_attempt = task.attempts_made
        attempts_made = failed_attempt + 1
        error_snippet = error[:MAX_ERROR_CHARS] if error else None
        now = self.clock()
        guard, guard_params = self._lease_guard(worker_id)
        guard = f"{guard} AND attempts_made = ?"
        guard_params.append(failed_attempt)
        lost = RetryDecision(task_id=task_id, attempt=failed_attempt, will_retry=False, lost=True)

        if retry and attempts_made < task.max_attempts:
            delay_s = backoff_delay(task.backoff_base_s, failed_attempt)
            with self.db.conn:
                cursor = self.db.execute(
                    f"""
                    UPDATE tasks
                    SET status = ?,
                        attempts_made = ?,
                        available_at = ?,
                        last_error = ?,
                        worker_id = NULL,
                        lease_expires_at = NULL,
                        updated_at = ?
                    WHERE task_id = ? AND {guard}
                    """,
                    (
                        TaskStatus.WAITING.value,
                        attempts_made,
                        now_iso(now + timedelta(seconds=delay_s)),
                        error_snippet,
                        now_iso(now),
                        task_id,
                        *guard_params,
                    ),
                )
                if not cursor.rowcount:
                    self._log_lost_lease("failure ack", task, worker_id)
                    return lost
                self._record_event(
                    TaskEventName.FAILED,
                    task,
                    attempt=attempts_made,
                    will_retry=True,
                    delay_s=delay_s,
                    error=error_snippet,
                )
            logger.info(
                "Task %s attempt %d/%d failed; retrying in %.2fs",
                task_id, attempts_made, task.max_attempts, delay_s,
            )
            return RetryDecision(
                task_id=task_id, attempt=attempts_made, will_retry=True, delay_s=delay_s
            )

        with self.db.conn:
            if not self._mark_failed(task, attempts_made, error_snippet, now, guard, guard_params):
                self._log_lost_lease("failure ack", task, worker_id)
                return lost
            self._record_event(TaskEventName.FAILED, task, attempt=attempts_made, error=error_snippet)
        logger.warning(
            "Task %s failed permanently after %d attempt(s)", task_id, attempts_made
        )
        return RetryDecision(task_id=task_id, attempt=attempts_made, will_retry=False)

    def heartbeat(self, task_id: str, worker_id: Optional[str] = None) -> bool:
        """Extend the lease. Returns False once the caller no longer holds it."""
        lease = self.clock() + timedelta(seconds=self.visibility_timeout_s)
        guard, guard_params = self._lease_guard(worker_id)
        with self.db.conn:
            cursor = self.db.execute(
                f"UPDATE tasks SET lease_expires_at = ? WHERE task_id = ? AND {guard}",
                (now_iso(lease), task_id, *guard_params),
            )
        return bool(cursor.rowcount)

    def recover_stalled(
        self, on_exhausted: Optional[Callable[[TaskItem], None]] = None
    ) -> StallReport:
        """Crash recovery: redeliver active tasks whose lease expired.

        A stalled delivery counts as an attempt. Tasks with attempts left go
        straight back to 'waiting'; the rest become 'failed', and
        on_exhausted(task) runs before the 'failed' event is recorded so the
        caller can settle the job record first.
        """
        now = self.clock()
        report = StallReport()

        rows = list(
            self.db["tasks"].rows_where(
                "status = ? AND lease_expires_at < ?",
                [TaskStatus.ACTIVE.value, now_iso(now)],
            )
        )

        for row in rows:
            task = self._row_to_task(row)
            attempts_made = task.attempts_made + 1
            error = f"Task lease expired on worker {task.worker_id} (worker presumed crashed)"

            if attempts_made < task.max_attempts:
                with self.db.conn:
                    cursor = self.db.execute(
                        """
                        UPDATE tasks
                        SET status = ?,
                            attempts_made = ?,
                            available_at = ?,
                            last_error = ?,
                            worker_id = NULL,
                            lease_expires_at = NULL,
                            updated_at = ?
                        WHERE task_id = ? AND status = ? AND lease_expires_at = ?
                        """,
                        (
                            TaskStatus.WAITING.value,
                            attempts_made,
                            now_iso(now),
                            error,
                            now_iso(now),
                            task.task_id,
                            TaskStatus.ACTIVE.value,
                            row["lease_expires_at"],
                        ),
                    )
                if cursor.rowcount:
                    report.requeued.append(task.task_id)
                    logger.warning("Redelivering stalled task %s (job %s)", task.task_id, task.job_id)
                continue

            # Claim the row first; the event follows once the job is settled
            with self.db.conn:
                claimed = self._mark_failed(
                    task,
                    attempts_made,
                    error,
                    now,
                    "status = ? AND lease_expires_at = ?",
                    [TaskStatus.ACTIVE.value, row["lease_expires_at"]],
                )
            if not claimed:
                continue

            if on_exhausted is not None:
                try:
                    on_exhausted(task)
                except Exception:
                    logger.exception("Settling job %s for exhausted task failed", task.job_id)

            with self.db.conn:
                self._record_event(TaskEventName.FAILED, task, attempt=attempts_made, error=error)
            report.exhausted.append(task.task_id)

        return report

    def get_task(self, task_id: str) -> TaskItem:
        rows = list(self.db["tasks"].rows_where("task_id = ?", [task_id]))
        if not rows:
            raise NotFoundError(f"Task not found: {task_id}")
        return self._row_to_task(rows[0])

    def tasks_for_job(self, job_id: str) -> List[TaskItem]:
        rows = self.db["tasks"].rows_where("job_id = ?", [job_id], order_by="created_at")
        return [self._row_to_task(row) for row in rows]

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for status, count in self.db.execute(
            "SELECT status, COUNT(*) FROM tasks GROUP BY status"
        ).fetchall():
            counts[status] = count
        return counts

    def _mark_failed(
        self,
        task: TaskItem,
        attempts_made: int,
        error: Optional[str],
        now: datetime,
        guard: str,
        guard_params: List[Any],
    ) -> bool:
        """Terminal failure if `guard` still holds; caller owns the transaction."""
        cursor = self.db.execute(
            f"""
            UPDATE tasks
            SET status = ?,
                attempts_made = ?,
                last_error = ?,
                finished_at = ?,
                updated_at = ?,
                lease_expires_at = NULL
            WHERE task_id = ? AND {guard}
            """,
            (
                TaskStatus.FAILED.value,
                attempts_made,
                error,
                now_iso(now),
                now_iso(now),
                task.task_id,
                *guard_params,
            ),
        )
        return bool(cursor.rowcount)

    @staticmethod
    def _lease_guard(worker_id: Optional[str]):
        """WHERE fragment matching an active task, held by worker_id when given."""
        if worker_id is None:
            return "status = ?", [TaskStatus.ACTIVE.value]
        return "status = ? AND worker_id = ?", [TaskStatus.ACTIVE.value, worker_id]

    @staticmethod
    def _log_lost_lease(action: str, task: TaskItem, worker_id: Optional[str]) -> None:
        logger.warning(
            "Dropping %s for task %s from worker %s: lease no longer held",
            action, task.task_id, worker_id,
        )

    def _record_event(
        self,
        event: TaskEventName,
        task: TaskItem,
        attempt: int = 0,
        will_retry: bool = False,
        delay_s: Optional[float] = None,
        error: Optional[str] = None,
    ) -> None:
        """Append to the event log; caller owns the transaction."""
        self.db.execute(
            """
            INSERT INTO task_events (
                event, task_id, job_id, attempt, will_retry, delay_s, error, timestamp
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.value,
                task.task_id,
                task.job_id,
                attempt,
                int(will_retry),
                delay_s,
                error,
                now_iso(self.clock()),
            ),
        )

    def _row_to_task(self, row: Dict[str, Any]) -> TaskItem:
        def parse(value: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(value) if value else None

        return TaskItem(
            task_id=row["task_id"],
            job_id=row["job_id"],
            owner_id=row["owner_id"],
            source_path=row["source_path"],
            media_kind=MediaKind(row["media_kind"]),
            status=TaskStatus(row["status"]),
            priority=row["priority"],
            attempts_made=row["attempts_made"],
            max_attempts=row["max_attempts"],
            backoff_base_s=row["backoff_base_s"],
            available_at=parse(row["available_at"]),
            lease_expires_at=parse(row["lease_expires_at"]),
            worker_id=row["worker_id"],
            last_error=row["last_error"],
            created_at=parse(row["created_at"]),
            updated_at=parse(row["updated_at"]),
        )
