"""
Progress Streaming Module

Publish/subscribe channel for job progress. The orchestrator publishes after
every batch and on every status change; any number of observers (an SSE
endpoint, a log tailer, a test) may subscribe per job.

Publishing never blocks: each subscriber has a bounded queue and when a slow
subscriber's queue is full the oldest event is dropped.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional
import json
import logging
import queue
import threading

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    """One progress update; ``type`` is started, progress, table_completed, paused, completed or failed."""

    job_id: str
    type: str
    status: str
    progress: Dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job_id': self.job_id,
            'type': self.type,
            'status': self.status,
            'progress': self.progress,
            'message': self.message,
            'timestamp': self.timestamp.isoformat(),
        }

    def to_sse(self) -> str:
        """Render as a server-sent event frame."""
        return f"event: {self.type}\ndata: {json.dumps(self.to_dict(), default=str)}\n\n"


class ProgressStream:
    """Interface for progress publishing."""

    def publish(self, job_id: str, event: ProgressEvent) -> None:
        raise NotImplementedError


class NullProgressStream(ProgressStream):
    """Discards events; used when nobody observes the job (e.g. Airflow tasks)."""

    def publish(self, job_id: str, event: ProgressEvent) -> None:
        logger.debug(f"Job {job_id}: {event.type} ({event.status})")


class Subscription:
    """Bounded event queue for one observer of one job."""

    def __init__(self, stream: "InMemoryProgressStream", job_id: str, max_events: int):
        self.job_id = job_id
        self.dropped = 0
        self._stream = stream
        self._queue: "queue.Queue[ProgressEvent]" = queue.Queue(maxsize=max_events)

    def offer(self, event: ProgressEvent) -> None:
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Next event, or None if none arrives within ``timeout`` seconds."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[ProgressEvent]:
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def events(self, timeout: float = 30.0) -> Iterator[ProgressEvent]:
        """Yield events until a terminal event arrives or the stream goes quiet."""
        while True:
            event = self.get(timeout=timeout)
            if event is None:
                return
            yield event
            if event.type in ('completed', 'failed', 'paused'):
                return

    def close(self) -> None:
        self._stream.unsubscribe(self)


class InMemoryProgressStream(ProgressStream):
    """In-process fan-out of progress events."""

    def __init__(self, max_events_per_subscriber: int = 100):
        self.max_events_per_subscriber = max_events_per_subscriber
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, job_id: str) -> Subscription:
        subscription = Subscription(self, job_id, self.max_events_per_subscriber)
        with self._lock:
            self._subscribers.setdefault(job_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.job_id, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.job_id, None)

    def publish(self, job_id: str, event: ProgressEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers.get(job_id, []))
        for subscription in subscribers:
            subscription.offer(event)
