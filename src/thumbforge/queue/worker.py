"""Worker pool that drives queued tasks through the media pipeline.

This module provides parallel thumbnail generation with:
- N executor threads, each processing one task at a time to completion
- Heartbeat threads that keep a running task's lease alive
- A reaper thread that redelivers tasks abandoned by a crashed worker
- Error classification (pipeline failures vs infrastructure errors)
- Graceful shutdown handling
"""

import logging
import threading
import time
from typing import List, Optional, Tuple

from ..errors import InvalidTransition, LeaseLostError, NotFoundError, PipelineError
from ..media import MediaPipeline, ThumbnailResult, cleanup_stale_temp_files
from .backends import JobStore, TaskQueue
from .models import JobStatus, TaskItem

logger = logging.getLogger(__name__)

# Shown to end users when the failure is not a pipeline error
GENERIC_FAILURE_MESSAGE = "Thumbnail generation failed due to an internal error"
ABANDONED_FAILURE_MESSAGE = (
    "Processing was interrupted repeatedly and the retry limit was reached"
)


class ThumbnailWorkerPool:
    """Thread-based worker pool.

    Each executor thread loops: dequeue → process → acknowledge. Threads
    share the injected store, queue and pipeline; the SQLite handles behind
    them hand every thread its own connection.
    """

    def __init__(
        self,
        store: JobStore,
        queue: TaskQueue,
        pipeline: MediaPipeline,
        n_workers: int = 2,
        poll_interval_s: float = 0.5,
        heartbeat_interval_s: float = 30.0,
        stall_check_interval_s: float = 30.0,
        name: str = "worker",
    ):
        """Initialize worker pool.

        Args:
            store: Job store (source of truth for job status)
            queue: Task queue to consume
            pipeline: Media pipeline producing thumbnails
            n_workers: Number of executor threads
            poll_interval_s: Sleep between dequeue attempts when idle
            heartbeat_interval_s: Lease refresh period while a task runs
            stall_check_interval_s: Period of the stalled-task sweep
            name: Prefix for worker ids and thread names
        """
        self.store = store
        self.queue = queue
        self.pipeline = pipeline
        self.n_workers = max(1, n_workers)
        self.poll_interval_s = poll_interval_s
        self.heartbeat_interval_s = heartbeat_interval_s
        self.stall_check_interval_s = stall_check_interval_s
        self.name = name

        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._busy = 0
        self._busy_lock = threading.Lock()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.shutdown(wait=True)

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        """Spawn the executor threads and the reaper."""
        if self.running:
            return
        self._stop.clear()
        cleanup_stale_temp_files(self.pipeline.output_dir)

        for i in range(self.n_workers):
            worker_id = f"{self.name}-{i + 1}"
            thread = threading.Thread(
                target=self._run_loop, args=(worker_id,), name=worker_id, daemon=True
            )
            thread.start()
            self._threads.append(thread)

        reaper = threading.Thread(target=self._reap_loop, name=f"{self.name}-reaper", daemon=True)
        reaper.start()
        self._threads.append(reaper)
        logger.info("Started %d worker thread(s)", self.n_workers)

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Stop taking new tasks; running tasks finish (no mid-flight cancel)."""
        self._stop.set()
        if wait:
            for thread in self._threads:
                thread.join(timeout=timeout)
        self._threads = []
        logger.info("Worker pool stopped")

    def wait_until_idle(self, timeout: float = 60.0) -> bool:
        """Block until no task is waiting or active.

        Returns:
            True if the queue drained within the timeout
        """
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            counts = self.queue.counts()
            with self._busy_lock:
                busy = self._busy
            if counts.get("waiting", 0) == 0 and counts.get("active", 0) == 0 and busy == 0:
                return True
            time.sleep(min(self.poll_interval_s, 0.1))
        return False

    def process_next(self, worker_id: str = "worker-0") -> bool:
        """Run one dequeue/process cycle.

        Returns:
            True if a task was dequeued (whatever its outcome)
        """
        task = self.queue.dequeue(worker_id)
        if task is None:
            return False
        with self._busy_lock:
            self._busy += 1
        try:
            self.process_task(task, worker_id)
        finally:
            with self._busy_lock:
                self._busy -= 1
        return True

    def process_task(self, task: TaskItem, worker_id: str) -> Optional[ThumbnailResult]:
        """Process one delivered task and acknowledge it.

        Error handling:
        - PipelineError: retried with backoff up to max_attempts
        - InvalidTransition: contract violation, failed without retry
        - LeaseLostError: another worker owns the task now; no ack
        - Other errors: logged with traceback, retried

        When an attempt fails for the last time the job is settled as failed
        so it never outlives its task in queued or processing.
        """
        try:
            job = self.store.get(task.job_id)
        except NotFoundError:
            logger.error("Task %s references unknown job %s", task.task_id, task.job_id)
            self.queue.ack_fail(
                task.task_id, f"Job not found: {task.job_id}", retry=False, worker_id=worker_id
            )
            return None

        if job.status == JobStatus.COMPLETED:
            # Redelivered after the job was finished but before the ack landed
            logger.info("Job %s already completed; acknowledging task %s", job.id, task.task_id)
            self.queue.ack_success(task.task_id, worker_id=worker_id)
            return None

        try:
            result = self._execute(task, worker_id)
        except LeaseLostError as e:
            logger.warning("Job %s: %s", task.job_id, e)
            return None
        except PipelineError as e:
            logger.warning("Job %s attempt %d failed: %s", task.job_id, task.attempts_made + 1, e)
            self._fail_attempt(task, worker_id, e.user_message(), True, e.user_message())
            return None
        except InvalidTransition as e:
            logger.error("Job %s: %s", task.job_id, e)
            self._fail_attempt(task, worker_id, str(e), False, GENERIC_FAILURE_MESSAGE)
            return None
        except Exception as e:
            logger.exception("Job %s failed with an unexpected error", task.job_id)
            self._fail_attempt(
                task, worker_id, f"{type(e).__name__}: {e}", True, GENERIC_FAILURE_MESSAGE
            )
            return None

        self.queue.ack_success(task.task_id, worker_id=worker_id)
        return result

    def _execute(self, task: TaskItem, worker_id: str) -> ThumbnailResult:
        """Steps 1-4 for one attempt; re-raises so the caller applies retry policy."""
        job_id = task.job_id
        self.store.transition(job_id, JobStatus.PROCESSING)
        if not self.queue.mark_started(task.task_id, worker_id=worker_id):
            raise LeaseLostError(task.task_id, worker_id)
        logger.info("Worker %s processing job %s (%s)", worker_id, job_id, task.media_kind)

        heartbeat = self._start_heartbeat(task.task_id, worker_id)
        try:
            try:
                result = self.pipeline.generate(task.media_kind, task.source_path)
            except PipelineError as e:
                self.store.transition(job_id, JobStatus.FAILED, error_message=e.user_message())
                raise
            except Exception:
                self.store.transition(job_id, JobStatus.FAILED, error_message=GENERIC_FAILURE_MESSAGE)
                raise

            self.store.transition(job_id, JobStatus.COMPLETED, thumbnail_file=result.filename)
            logger.info("Job %s completed: %s", job_id, result.filename)
            return result
        finally:
            self._stop_heartbeat(heartbeat)

    def _fail_attempt(
        self, task: TaskItem, worker_id: str, error: str, retry: bool, job_message: str
    ) -> None:
        decision = self.queue.ack_fail(task.task_id, error, retry=retry, worker_id=worker_id)
        if not decision.will_retry and not decision.lost:
            try:
                self._settle_failed_job(task.job_id, job_message)
            except Exception:
                logger.exception("Settling job %s after its final attempt failed", task.job_id)

    def recover_stalled(self):
        """Redeliver abandoned tasks; fail the jobs of exhausted ones."""
        report = self.queue.recover_stalled(on_exhausted=self._fail_abandoned_job)
        if report.requeued or report.exhausted:
            logger.warning(
                "Stall sweep: %d redelivered, %d exhausted",
                len(report.requeued), len(report.exhausted),
            )
        return report

    def _fail_abandoned_job(self, task: TaskItem) -> None:
        self._settle_failed_job(task.job_id, ABANDONED_FAILURE_MESSAGE)

    def _settle_failed_job(self, job_id: str, message: str) -> None:
        """Move a job still in queued or processing to failed."""
        job = self.store.get(job_id)
        if job.status in (JobStatus.QUEUED, JobStatus.PROCESSING):
            self.store.transition(job.id, JobStatus.FAILED, error_message=message)

    def _run_loop(self, worker_id: str) -> None:
        while not self._stop.is_set():
            try:
                if self.process_next(worker_id):
                    continue
            except Exception:
                # Queue backend trouble; keep the thread alive and back off
                logger.exception("Worker %s loop error", worker_id)
            self._stop.wait(self.poll_interval_s)

    def _reap_loop(self) -> None:
        while not self._stop.wait(self.stall_check_interval_s):
            try:
                self.recover_stalled()
            except Exception:
                logger.exception("Stalled-task sweep failed")

    def _start_heartbeat(
        self, task_id: str, worker_id: str
    ) -> Tuple[threading.Thread, threading.Event]:
        """Refresh the task lease every heartbeat_interval_s until stopped.

        Stops early once the lease has passed to another worker.
        Thread is daemon so it won't block process exit.
        """
        stop_event = threading.Event()

        def heartbeat_loop():
            while not stop_event.wait(self.heartbeat_interval_s):
                try:
                    if not self.queue.heartbeat(task_id, worker_id=worker_id):
                        logger.warning("Worker %s lost the lease on task %s", worker_id, task_id)
                        return
                except Exception as e:
                    logger.warning("Heartbeat failed for task %s: %s", task_id, e)

        thread = threading.Thread(target=heartbeat_loop, name=f"heartbeat-{task_id[:8]}", daemon=True)
        thread.start()
        return thread, stop_event

    @staticmethod
    def _stop_heartbeat(heartbeat: Tuple[threading.Thread, threading.Event]) -> None:
        thread, stop_event = heartbeat
        stop_event.set()
        thread.join(timeout=5)
