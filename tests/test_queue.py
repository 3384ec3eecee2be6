"""Unit tests for the SQLite task queue.

Tests cover:
- Task enqueue/dequeue and delivery order
- Retry with exponential backoff
- Lease heartbeat and stalled-task recovery
- Acknowledgements only from the current lease holder
- Lifecycle events written alongside state changes
- Concurrent dequeue safety
- Schema bookkeeping on the connection handle
"""

import sqlite3
import threading
import uuid

import pytest
from sqlite_utils.db import Table

from thumbforge.errors import EnqueueError, NotFoundError
from thumbforge.queue.connection import SQLiteHandle
from thumbforge.queue.models import EnqueueOptions, MediaKind, TaskPayload, TaskStatus
from thumbforge.queue.sqlite_backend import backoff_delay


def _payload(job_id=None, kind=MediaKind.IMAGE):
    return TaskPayload(
        job_id=job_id or str(uuid.uuid4()),
        source_path="/uploads/photo.png",
        owner_id="alice",
        media_kind=kind,
    )


def _events(task_queue, task_id=None):
    rows = task_queue.db.execute(
        "SELECT event, task_id, attempt, will_retry, delay_s FROM task_events ORDER BY event_id"
    ).fetchall()
    return [r for r in rows if task_id is None or r[1] == task_id]


class TestQueueOperations:
    """Test basic queue operations."""

    def test_enqueue_dequeue(self, task_queue):
        """Dequeue leases the task to the worker."""
        payload = _payload(kind=MediaKind.VIDEO)
        task_id = task_queue.enqueue(payload)

        task = task_queue.dequeue("worker-1")

        assert task is not None
        assert task.task_id == task_id
        assert task.job_id == payload.job_id
        assert task.media_kind == MediaKind.VIDEO
        assert task.status == TaskStatus.ACTIVE
        assert task.worker_id == "worker-1"
        assert task.lease_expires_at is not None
        assert task.attempts_made == 0

    def test_dequeue_empty_queue(self, task_queue):
        assert task_queue.dequeue("worker-1") is None

    def test_task_delivered_once(self, task_queue):
        """An active task is not handed to a second worker."""
        task_queue.enqueue(_payload())

        assert task_queue.dequeue("worker-1") is not None
        assert task_queue.dequeue("worker-2") is None

    def test_priority_order(self, task_queue):
        """Higher priority is delivered first, FIFO within a priority."""
        low = task_queue.enqueue(_payload(), EnqueueOptions(priority=1))
        high = task_queue.enqueue(_payload(), EnqueueOptions(priority=5))
        low_2 = task_queue.enqueue(_payload(), EnqueueOptions(priority=1))

        order = [task_queue.dequeue("w").task_id for _ in range(3)]

        assert order == [high, low, low_2]

    def test_ack_success(self, task_queue):
        task_id = task_queue.enqueue(_payload())
        task_queue.dequeue("worker-1")

        assert task_queue.ack_success(task_id, worker_id="worker-1") is True

        task = task_queue.get_task(task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.lease_expires_at is None
        assert [e[0] for e in _events(task_queue, task_id)] == ["completed"]

    def test_mark_started_records_active(self, task_queue):
        task_id = task_queue.enqueue(_payload())
        task_queue.dequeue("worker-1")

        assert task_queue.mark_started(task_id, worker_id="worker-1") is True

        assert _events(task_queue, task_id) == [("active", task_id, 1, 0, None)]

    def test_get_task_unknown(self, task_queue):
        with pytest.raises(NotFoundError):
            task_queue.get_task("missing")

    def test_tasks_for_job(self, task_queue):
        payload = _payload()
        task_queue.enqueue(payload)
        task_queue.enqueue(_payload())

        tasks = task_queue.tasks_for_job(payload.job_id)

        assert len(tasks) == 1
        assert tasks[0].job_id == payload.job_id

    def test_counts(self, task_queue):
        task_queue.enqueue(_payload())
        task_queue.enqueue(_payload())
        task_queue.dequeue("worker-1")

        counts = task_queue.counts()

        assert counts == {"waiting": 1, "active": 1, "completed": 0, "failed": 0}

    def test_enqueue_backend_failure(self, task_queue):
        """Storage errors surface as EnqueueError."""
        task_queue.db.execute("DROP TABLE tasks")

        with pytest.raises(EnqueueError):
            task_queue.enqueue(_payload())


class TestRetryBackoff:
    """Test ack_fail and exponential backoff."""

    def test_backoff_delay(self):
        assert backoff_delay(2.0, 0) == 2.0
        assert backoff_delay(2.0, 1) == 4.0
        assert backoff_delay(2.0, 2) == 8.0

    def test_retry_delays_strictly_increase(self, task_queue, clock):
        """Each retry waits base * 2**attempt and is invisible until then."""
        task_id = task_queue.enqueue(_payload(), EnqueueOptions(max_attempts=3, backoff_base_s=2.0))
        delays = []

        for _ in range(2):
            task_queue.dequeue("worker-1")
            decision = task_queue.ack_fail(task_id, "decode error")
            assert decision.will_retry is True
            delays.append(decision.delay_s)

            # Not yet visible
            assert task_queue.dequeue("worker-1") is None
            clock.advance(decision.delay_s)

        assert delays == [2.0, 4.0]
        assert delays[0] < delays[1]

        task_queue.dequeue("worker-1")
        final = task_queue.ack_fail(task_id, "decode error")

        assert final.will_retry is False
        assert final.attempt == 3
        task = task_queue.get_task(task_id)
        assert task.status == TaskStatus.FAILED
        assert task.attempts_made == 3
        assert task.last_error == "decode error"

    def test_retry_returns_to_waiting(self, task_queue, clock):
        task_id = task_queue.enqueue(_payload(), EnqueueOptions(backoff_base_s=1.0))
        task_queue.dequeue("worker-1")

        task_queue.ack_fail(task_id, "boom")

        task = task_queue.get_task(task_id)
        assert task.status == TaskStatus.WAITING
        assert task.attempts_made == 1
        assert task.worker_id is None

        clock.advance(1.0)
        redelivered = task_queue.dequeue("worker-2")
        assert redelivered.task_id == task_id
        assert redelivered.attempts_made == 1

    def test_ack_fail_no_retry(self, task_queue):
        """retry=False fails permanently on the first attempt."""
        task_id = task_queue.enqueue(_payload(), EnqueueOptions(max_attempts=5))
        task_queue.dequeue("worker-1")

        decision = task_queue.ack_fail(task_id, "job missing", retry=False)

        assert decision.will_retry is False
        assert task_queue.get_task(task_id).status == TaskStatus.FAILED

    def test_failed_events_carry_retry_info(self, task_queue, clock):
        task_id = task_queue.enqueue(_payload(), EnqueueOptions(max_attempts=2, backoff_base_s=3.0))
        task_queue.dequeue("worker-1")
        task_queue.ack_fail(task_id, "first")
        clock.advance(3.0)
        task_queue.dequeue("worker-1")
        task_queue.ack_fail(task_id, "second")

        events = _events(task_queue, task_id)

        assert events == [
            ("failed", task_id, 1, 1, 3.0),
            ("failed", task_id, 2, 0, None),
        ]

    def test_error_truncated(self, task_queue):
        task_id = task_queue.enqueue(_payload(), EnqueueOptions(max_attempts=1))
        task_queue.dequeue("worker-1")

        task_queue.ack_fail(task_id, "x" * 5000)

        assert len(task_queue.get_task(task_id).last_error) == 1000


class TestLeases:
    """Test heartbeat and stalled-task recovery."""

    def test_heartbeat_extends_lease(self, task_queue, clock):
        task_id = task_queue.enqueue(_payload())
        task = task_queue.dequeue("worker-1")
        first_lease = task.lease_expires_at

        clock.advance(30)
        assert task_queue.heartbeat(task_id, worker_id="worker-1") is True

        assert task_queue.get_task(task_id).lease_expires_at > first_lease

    def test_live_lease_not_recovered(self, task_queue, clock):
        task_queue.enqueue(_payload())
        task_queue.dequeue("worker-1")
        clock.advance(30)

        report = task_queue.recover_stalled()

        assert report.requeued == []
        assert report.exhausted == []

    def test_stalled_task_redelivered(self, task_queue, clock):
        """An expired lease counts one attempt and is redelivered immediately."""
        task_id = task_queue.enqueue(_payload(), EnqueueOptions(max_attempts=3))
        task_queue.dequeue("crashed-worker")
        clock.advance(61)

        report = task_queue.recover_stalled()

        assert report.requeued == [task_id]
        task = task_queue.dequeue("worker-2")
        assert task.task_id == task_id
        assert task.attempts_made == 1
        assert "crashed-worker" in task.last_error

    def test_stalled_task_exhausted(self, task_queue, clock):
        """Out of attempts: on_exhausted runs, then the task fails."""
        task_id = task_queue.enqueue(_payload(), EnqueueOptions(max_attempts=1))
        task_queue.dequeue("crashed-worker")
        clock.advance(61)
        settled = []

        report = task_queue.recover_stalled(on_exhausted=lambda t: settled.append(t.task_id))

        assert report.exhausted == [task_id]
        assert settled == [task_id]
        assert task_queue.get_task(task_id).status == TaskStatus.FAILED
        assert _events(task_queue, task_id)[-1][0] == "failed"

    def test_on_exhausted_error_still_fails_task(self, task_queue, clock):
        task_id = task_queue.enqueue(_payload(), EnqueueOptions(max_attempts=1))
        task_queue.dequeue("crashed-worker")
        clock.advance(61)

        def broken(task):
            raise RuntimeError("store offline")

        report = task_queue.recover_stalled(on_exhausted=broken)

        assert report.exhausted == [task_id]
        assert task_queue.get_task(task_id).status == TaskStatus.FAILED

    def test_stale_worker_cannot_ack_redelivered_task(self, task_queue, clock):
        """A worker whose lease expired loses every write to the new holder."""
        task_id = task_queue.enqueue(_payload(), EnqueueOptions(max_attempts=3, backoff_base_s=1.0))
        task_queue.dequeue("worker-a")
        clock.advance(61)
        task_queue.recover_stalled()
        assert task_queue.dequeue("worker-b").task_id == task_id
        events_before = _events(task_queue, task_id)

        decision = task_queue.ack_fail(task_id, "late failure", worker_id="worker-a")

        assert decision.lost is True
        assert decision.will_retry is False
        assert task_queue.dequeue("worker-c") is None
        assert task_queue.mark_started(task_id, worker_id="worker-a") is False
        assert task_queue.heartbeat(task_id, worker_id="worker-a") is False
        assert task_queue.ack_success(task_id, worker_id="worker-a") is False
        assert _events(task_queue, task_id) == events_before

        task = task_queue.get_task(task_id)
        assert task.status == TaskStatus.ACTIVE
        assert task.worker_id == "worker-b"
        assert task.attempts_made == 1

        assert task_queue.ack_success(task_id, worker_id="worker-b") is True
        assert task_queue.get_task(task_id).status == TaskStatus.COMPLETED

    def test_ack_after_completion_is_dropped(self, task_queue):
        task_id = task_queue.enqueue(_payload())
        task_queue.dequeue("worker-1")
        task_queue.ack_success(task_id, worker_id="worker-1")

        decision = task_queue.ack_fail(task_id, "too late", retry=False)

        assert decision.lost is True
        assert task_queue.get_task(task_id).status == TaskStatus.COMPLETED
        assert [e[0] for e in _events(task_queue, task_id)] == ["completed"]

    def test_exhausted_sweep_skips_task_acked_meanwhile(self, task_queue, clock, monkeypatch):
        """A task acked after the sweep read it is neither failed nor settled."""
        task_id = task_queue.enqueue(_payload(), EnqueueOptions(max_attempts=1))
        task_queue.dequeue("slow-worker")
        clock.advance(61)
        settled = []
        original = Table.rows_where
        acked = []

        def read_then_ack(self, *args, **kwargs):
            rows = list(original(self, *args, **kwargs))
            monkeypatch.setattr(Table, "rows_where", original)
            acked.append(task_queue.ack_success(task_id, worker_id="slow-worker"))
            return rows

        monkeypatch.setattr(Table, "rows_where", read_then_ack)
        report = task_queue.recover_stalled(on_exhausted=lambda t: settled.append(t.task_id))

        assert acked == [True]
        assert report.exhausted == []
        assert settled == []
        assert task_queue.get_task(task_id).status == TaskStatus.COMPLETED


class TestConcurrency:
    """Test concurrent dequeue safety."""

    def test_concurrent_dequeue_claims_each_task_once(self, task_queue):
        task_ids = {task_queue.enqueue(_payload()) for _ in range(30)}
        claimed = []
        lock = threading.Lock()

        def drain(worker_id):
            while True:
                task = task_queue.dequeue(worker_id)
                if task is None:
                    return
                with lock:
                    claimed.append(task.task_id)

        threads = [threading.Thread(target=drain, args=(f"w{i}",)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert sorted(claimed) == sorted(task_ids)
        assert len(claimed) == len(set(claimed))


class TestSQLiteHandle:
    """Test schema bookkeeping on the shared handle."""

    def test_failed_schema_script_runs_again(self, workdir):
        handle = SQLiteHandle(str(workdir / "schema.sqlite"))
        script = "CREATE INDEX IF NOT EXISTS idx_later_x ON later(x);"
        try:
            with pytest.raises(sqlite3.OperationalError):
                handle.ensure_schema(script)

            handle.db.execute("CREATE TABLE later (x INTEGER)")
            handle.ensure_schema(script)

            assert "idx_later_x" in [index.name for index in handle.db["later"].indexes]
        finally:
            handle.close()
