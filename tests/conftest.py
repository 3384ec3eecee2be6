import tempfile
import threading
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from PIL import Image

from thumbforge.errors import PipelineError
from thumbforge.media import MediaPipeline
from thumbforge.queue.connection import SQLiteHandle
from thumbforge.queue.events import QueueEvents
from thumbforge.queue.job_store import SQLiteJobStore
from thumbforge.queue.models import EnqueueOptions
from thumbforge.queue.sqlite_backend import SQLiteTaskQueue
from thumbforge.service import ThumbnailService


class FakeClock:
    """Manually advanced clock for the task queue."""

    def __init__(self, start=datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            return self.now

    def advance(self, seconds):
        with self._lock:
            self.now += timedelta(seconds=seconds)


class FakeRunner:
    """Stands in for FfmpegRunner: reports a duration and writes a frame."""

    def __init__(self, duration=10.0, probe_failures=0, extract_failures=0, frame_size=(320, 240)):
        self.duration = duration
        self.probe_failures = probe_failures
        self.extract_failures = extract_failures
        self.frame_size = frame_size
        self.probes = []
        self.extractions = []
        self._lock = threading.Lock()

    def probe_duration(self, source_path):
        with self._lock:
            self.probes.append(source_path)
            if self.probe_failures:
                self.probe_failures -= 1
                raise PipelineError(
                    "Could not determine video duration",
                    f"{source_path}: Invalid data found when processing input",
                )
        return self.duration

    def extract_frame(self, source_path, timestamp_s, output_path):
        with self._lock:
            self.extractions.append((source_path, timestamp_s, output_path))
            if self.extract_failures:
                self.extract_failures -= 1
                raise PipelineError("Frame extraction failed with exit code 1", "moov atom not found")
        Image.new("RGB", self.frame_size, (10, 120, 200)).save(output_path, "JPEG")


class RecordingConnection:
    """Realtime connection double that keeps every message."""

    def __init__(self, fail=False):
        self.messages = []
        self.fail = fail
        self.received = threading.Event()

    def send(self, message):
        if self.fail:
            raise ConnectionError("peer went away")
        self.messages.append(message)
        self.received.set()

    @property
    def statuses(self):
        return [m["status"] for m in self.messages]


@pytest.fixture
def workdir():
    """Temporary directory holding databases, uploads and thumbnails."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def output_dir(workdir):
    path = workdir / "thumbnails"
    path.mkdir()
    return path


@pytest.fixture
def jobs_handle(workdir):
    handle = SQLiteHandle(str(workdir / "jobs.sqlite"))
    yield handle
    handle.close()


@pytest.fixture
def queue_handle(workdir):
    handle = SQLiteHandle(str(workdir / "queue.sqlite"))
    yield handle
    handle.close()


@pytest.fixture
def store(jobs_handle):
    return SQLiteJobStore(jobs_handle)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def task_queue(queue_handle, clock):
    """Queue on a fake clock (backoff and leases advance only when told to)."""
    return SQLiteTaskQueue(queue_handle, visibility_timeout_s=60, clock=clock)


@pytest.fixture
def live_queue(queue_handle):
    """Queue on the wall clock, for worker tests."""
    return SQLiteTaskQueue(queue_handle, visibility_timeout_s=60)


@pytest.fixture
def events(queue_handle):
    return QueueEvents(queue_handle, poll_interval_s=0.02)


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def pipeline(output_dir, fake_runner):
    return MediaPipeline(str(output_dir), runner=fake_runner)


@pytest.fixture
def service(store, live_queue, output_dir, events):
    """Service with millisecond retry backoff so worker tests barely sleep."""
    return ThumbnailService(
        store,
        live_queue,
        str(output_dir),
        events=events,
        enqueue_options=EnqueueOptions(max_attempts=3, backoff_base_s=0.001),
    )


@pytest.fixture
def make_image(workdir):
    """Factory writing a real image file under workdir/uploads."""

    def _make(name="photo.png", size=(640, 480), color=(200, 30, 30), mode="RGB"):
        path = workdir / "uploads" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        Image.new(mode, size, color if mode == "RGB" else color + (128,)).save(path)
        return path

    return _make


@pytest.fixture
def make_video(workdir):
    """Factory writing a placeholder video file (decoded only by FakeRunner)."""

    def _make(name="clip.mp4"):
        path = workdir / "uploads" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 1024)
        return path

    return _make


@pytest.fixture
def runner_factory():
    return FakeRunner


@pytest.fixture
def connection_factory():
    return RecordingConnection
