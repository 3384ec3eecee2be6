"""Producer facade over the job store, the task queue and the relay.

All handles are constructed explicitly (see from_config) and injected, so an
API process and a worker process can share the same database files without
any module-level state.
"""

import logging
from pathlib import Path
from typing import List, Optional

from .errors import EnqueueError, NotFoundError
from .ffmpeg_runner import FfmpegRunner
from .media import MediaPipeline, resolve_media_kind
from .models import ThumbforgeConfig
from .queue.backends import JobStore, TaskQueue
from .queue.connection import SQLiteHandle
from .queue.events import QueueEvents, Subscription
from .queue.job_store import SQLiteJobStore
from .queue.models import EnqueueOptions, Job, JobStatus, MediaKind, TaskPayload
from .queue.sqlite_backend import SQLiteTaskQueue
from .queue.worker import ThumbnailWorkerPool
from .relay import ChannelRegistry, Connection, EventRelay

logger = logging.getLogger(__name__)

QUEUE_UNAVAILABLE_MESSAGE = "Processing queue unavailable"


class ThumbnailService:
    """Submission, queries and live subscriptions for thumbnail jobs."""

    def __init__(
        self,
        store: JobStore,
        queue: TaskQueue,
        output_dir: str,
        registry: Optional[ChannelRegistry] = None,
        events: Optional[QueueEvents] = None,
        enqueue_options: Optional[EnqueueOptions] = None,
        image_extensions=None,
        video_extensions=None,
        config: Optional[ThumbforgeConfig] = None,
    ):
        self.store = store
        self.queue = queue
        self.output_dir = Path(output_dir)
        self.registry = registry or ChannelRegistry()
        self.relay = EventRelay(store, self.registry)
        self.events = events
        self.enqueue_options = enqueue_options or EnqueueOptions()
        self.config = config

        media_kwargs = {}
        if image_extensions is not None:
            media_kwargs["image_extensions"] = image_extensions
        if video_extensions is not None:
            media_kwargs["video_extensions"] = video_extensions
        self._media_kwargs = media_kwargs

        self._relay_subscription: Optional[Subscription] = None
        self._handles: List[SQLiteHandle] = []

    @classmethod
    def from_config(cls, config: ThumbforgeConfig) -> "ThumbnailService":
        """Build store, queue and event tail from configuration."""
        storage = config.storage
        jobs_handle = SQLiteHandle(storage.jobs_db, busy_timeout_s=storage.busy_timeout_s)
        queue_handle = SQLiteHandle(storage.queue_db, busy_timeout_s=storage.busy_timeout_s)

        service = cls(
            store=SQLiteJobStore(jobs_handle),
            queue=SQLiteTaskQueue(
                queue_handle, visibility_timeout_s=config.queue.visibility_timeout_s
            ),
            output_dir=storage.output_dir,
            events=QueueEvents(
                queue_handle,
                poll_interval_s=config.queue.event_poll_interval_s,
                retention=config.queue.event_retention,
            ),
            enqueue_options=EnqueueOptions(
                priority=config.queue.priority,
                max_attempts=config.queue.max_attempts,
                backoff_base_s=config.queue.backoff_base_s,
            ),
            image_extensions=config.thumbnail.image_extensions,
            video_extensions=config.thumbnail.video_extensions,
            config=config,
        )
        service._handles = [jobs_handle, queue_handle]
        return service

    def check_media(self, mime_type: str, original_name: str) -> MediaKind:
        """Media kind for an upload; raises ValidationError if unsupported."""
        return resolve_media_kind(mime_type, original_name, **self._media_kwargs)

    def submit(
        self,
        owner_id: str,
        source_path: str,
        original_name: str,
        mime_type: str,
        size_bytes: int,
    ) -> Job:
        """Create a Job and enqueue its Task.

        Raises:
            ValidationError: Unsupported media type (nothing is persisted)
        """
        media_kind = self.check_media(mime_type, original_name)

        job = self.store.create(owner_id, str(source_path), original_name, mime_type, size_bytes)
        payload = TaskPayload(
            job_id=job.id, source_path=str(source_path), owner_id=owner_id, media_kind=media_kind
        )
        try:
            self.queue.enqueue(payload, self.enqueue_options)
        except EnqueueError as e:
            logger.error("Could not enqueue job %s: %s", job.id, e)
            job = self.store.transition(job.id, JobStatus.FAILED, error_message=QUEUE_UNAVAILABLE_MESSAGE)

        self.relay.push(job)
        return job

    def list_by_owner(self, owner_id: str) -> List[Job]:
        return self.store.list_by_owner(owner_id)

    def get_job(self, job_id: str) -> Job:
        return self.store.get(job_id)

    def subscribe(self, owner_id: str, connection: Connection) -> Subscription:
        return self.registry.subscribe(owner_id, connection)

    def resolve_thumbnail_path(self, job: Job) -> Path:
        """Thumbnail file of a completed job, confined to the output directory.

        Raises:
            NotFoundError: Not completed yet, or file missing on disk
        """
        if job.status != JobStatus.COMPLETED or not job.thumbnail_file:
            raise NotFoundError(f"Job {job.id} has no thumbnail yet (status: {job.status})")

        root = self.output_dir.resolve()
        path = (root / job.thumbnail_file).resolve()
        if root not in path.parents or not path.is_file():
            raise NotFoundError(f"Thumbnail file not found for job {job.id}")
        return path

    def worker_pool(self, n_workers: Optional[int] = None) -> ThumbnailWorkerPool:
        """Worker pool sharing this service's store and queue."""
        config = self.config or ThumbforgeConfig()
        runner = FfmpegRunner(
            ffmpeg_path=config.ffmpeg.ffmpeg_path,
            timeout_s=config.ffmpeg.timeout_s,
            kill_grace_period_s=config.ffmpeg.kill_grace_period_s,
            save_artifacts_on_failure=config.ffmpeg.save_artifacts_on_failure,
            artifacts_dir=config.ffmpeg.artifacts_dir,
            loglevel=config.ffmpeg.loglevel,
        )
        pipeline = MediaPipeline(
            str(self.output_dir),
            runner=runner,
            size=config.thumbnail.size,
            jpeg_quality=config.thumbnail.jpeg_quality,
        )
        return ThumbnailWorkerPool(
            self.store,
            self.queue,
            pipeline,
            n_workers=n_workers or config.worker.workers,
            poll_interval_s=config.worker.poll_interval_s,
            heartbeat_interval_s=config.worker.heartbeat_interval_s,
            stall_check_interval_s=config.worker.stall_check_interval_s,
        )

    def start(self) -> None:
        """Attach the relay to the queue events and start polling."""
        if self.events is None or self._relay_subscription is not None:
            return
        self._relay_subscription = self.relay.attach(self.events)
        self.events.start()
        logger.info("Event relay started")

    def stop(self) -> None:
        if self.events is not None:
            self.events.stop()
        if self._relay_subscription is not None:
            self._relay_subscription.cancel()
            self._relay_subscription = None

    def close(self) -> None:
        self.stop()
        for handle in self._handles:
            handle.close()
