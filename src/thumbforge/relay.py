"""Realtime fan-out of job updates to per-owner channels.

The relay never trusts event payloads for job state: each queue event only
names a job, and the relay re-reads that job from the store before pushing.
Delivery is fire-and-forget. A client that is not connected misses the
update and catches up by listing its jobs.
"""

import logging
import threading
from collections import defaultdict
from typing import Any, Dict, List, Protocol

from .errors import NotFoundError
from .queue.backends import JobStore
from .queue.events import QueueEvents, Subscription
from .queue.models import Job, TaskEvent

logger = logging.getLogger(__name__)


class Connection(Protocol):
    """A live client connection. send() may raise if the peer is gone."""

    def send(self, message: Dict[str, Any]) -> None:
        ...


class ChannelRegistry:
    """Owner id -> set of live connections."""

    def __init__(self):
        self._channels: Dict[str, List[Connection]] = defaultdict(list)
        self._lock = threading.Lock()

    def subscribe(self, owner_id: str, connection: Connection) -> Subscription:
        with self._lock:
            self._channels[owner_id].append(connection)
        logger.debug("Connection joined channel %s", owner_id)
        return Subscription(lambda: self.unsubscribe(owner_id, connection))

    def unsubscribe(self, owner_id: str, connection: Connection) -> None:
        with self._lock:
            members = self._channels.get(owner_id)
            if not members:
                return
            if connection in members:
                members.remove(connection)
            if not members:
                del self._channels[owner_id]

    def connections(self, owner_id: str) -> List[Connection]:
        with self._lock:
            return list(self._channels.get(owner_id, ()))

    def owners(self) -> List[str]:
        with self._lock:
            return list(self._channels)


class EventRelay:
    """Turns queue events into job updates on owner channels."""

    def __init__(self, store: JobStore, registry: ChannelRegistry):
        self.store = store
        self.registry = registry

    def attach(self, events: QueueEvents) -> Subscription:
        return events.subscribe(self.handle_event)

    def handle_event(self, event: TaskEvent) -> None:
        try:
            job = self.store.get(event.job_id)
        except NotFoundError:
            logger.warning("Queue event %s for unknown job %s; skipped", event.event, event.job_id)
            return
        logger.debug("Relaying %s event for job %s (%s)", event.event, job.id, job.status)
        self.push(job)

    def push(self, job: Job) -> int:
        """Send the job to every connection of its owner.

        Returns:
            Number of connections that accepted the message
        """
        message = job.to_message()
        delivered = 0
        for connection in self.registry.connections(job.owner_id):
            try:
                connection.send(message)
                delivered += 1
            except Exception as e:
                logger.info("Dropping connection for owner %s: %s", job.owner_id, e)
                self.registry.unsubscribe(job.owner_id, connection)
        return delivered
