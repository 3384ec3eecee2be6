"""Queue lifecycle event stream.

The task queue appends every lifecycle event to the `task_events` table in
the same transaction as the state change it describes. QueueEvents tails that
table, so a consumer in any process sees the events of every worker, in order.
"""

import itertools
import logging
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .connection import SQLiteHandle
from .models import TaskEvent, TaskEventName
from .sqlite_backend import SCHEMA_SQL

logger = logging.getLogger(__name__)

EventListener = Callable[[TaskEvent], None]


class Subscription:
    """Cancellable handle returned by every subscribe() call.

    Cancelling is idempotent. Usable as a context manager.
    """

    def __init__(self, cancel: Callable[[], None]):
        self._cancel = cancel
        self._active = True
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
        self._cancel()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.cancel()


class QueueEvents:
    """Tail of the persisted queue event log.

    Starts at the position current at construction (history is not replayed
    unless replay=True), dispatches each new event to every listener, and
    trims the log to `retention` rows.
    """

    def __init__(
        self,
        handle: SQLiteHandle,
        poll_interval_s: float = 0.25,
        retention: int = 10000,
        batch_size: int = 200,
        replay: bool = False,
    ):
        self.handle = handle
        self.poll_interval_s = poll_interval_s
        self.retention = retention
        self.batch_size = batch_size
        self.handle.ensure_schema(SCHEMA_SQL)

        self._listeners: Dict[int, EventListener] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._poll_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_id = 0 if replay else self._latest_event_id()

    @property
    def position(self) -> int:
        """Id of the last event dispatched."""
        return self._last_id

    def subscribe(self, listener: EventListener) -> Subscription:
        with self._lock:
            key = next(self._ids)
            self._listeners[key] = listener

        def cancel():
            with self._lock:
                self._listeners.pop(key, None)

        return Subscription(cancel)

    def poll_once(self) -> int:
        """Dispatch every event newer than the current position.

        Returns:
            Number of events dispatched
        """
        with self._poll_lock:
            dispatched = 0
            while True:
                rows = self.handle.db.execute(
                    """
                    SELECT event_id, event, task_id, job_id, attempt, will_retry,
                           delay_s, error, timestamp
                    FROM task_events
                    WHERE event_id > ?
                    ORDER BY event_id
                    LIMIT ?
                    """,
                    (self._last_id, self.batch_size),
                ).fetchall()
                if not rows:
                    break
                for row in rows:
                    self._dispatch(self._row_to_event(row))
                    self._last_id = row[0]
                    dispatched += 1
                if len(rows) < self.batch_size:
                    break
            if dispatched:
                self._trim()
            return dispatched

    def start(self) -> None:
        """Run the poller on a daemon thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="queue-events", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception:
                logger.exception("Polling queue events failed")
            self._stop.wait(self.poll_interval_s)

    def _dispatch(self, event: TaskEvent) -> None:
        with self._lock:
            listeners: List[EventListener] = list(self._listeners.values())
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Listener failed on %s event for job %s", event.event, event.job_id
                )

    def _latest_event_id(self) -> int:
        row = self.handle.db.execute("SELECT MAX(event_id) FROM task_events").fetchone()
        return row[0] or 0

    def _trim(self) -> None:
        cutoff = self._last_id - self.retention
        if cutoff <= 0:
            return
        with self.handle.db.conn:
            self.handle.db.execute("DELETE FROM task_events WHERE event_id <= ?", (cutoff,))

    @staticmethod
    def _row_to_event(row) -> TaskEvent:
        event_id, event, task_id, job_id, attempt, will_retry, delay_s, error, timestamp = row
        return TaskEvent(
            event_id=event_id,
            event=TaskEventName(event),
            task_id=task_id,
            job_id=job_id,
            attempt=attempt,
            will_retry=bool(will_retry),
            delay_s=delay_s,
            error=error,
            timestamp=datetime.fromisoformat(timestamp),
        )
