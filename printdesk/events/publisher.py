"""Fan-out of job and queue state changes to subscribers."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Union

import structlog

from printdesk.observability.metrics import MetricsRegistry
from printdesk.orchestrator.jobs import Job, queue_stats

LOGGER = structlog.get_logger(__name__)


@dataclass(frozen=True)
class JobAdded:
    job: Dict[str, Any]
    type: str = field(default="jobAdded", init=False)

    @classmethod
    def from_job(cls, job: Job) -> "JobAdded":
        return cls(job=job.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "job": self.job}


@dataclass(frozen=True)
class JobStatusChanged:
    id: str
    status: str
    progress: Optional[int] = None
    error: Optional[str] = None
    type: str = field(default="jobStatusChanged", init=False)

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusChanged":
        return cls(id=job.id, status=job.status.value, progress=job.progress, error=job.error)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type, "id": self.id, "status": self.status}
        if self.progress is not None:
            payload["progress"] = self.progress
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class QueueSnapshotChanged:
    jobs: List[Dict[str, Any]]
    stats: Dict[str, int]
    type: str = field(default="queueSnapshotChanged", init=False)

    @classmethod
    def from_jobs(cls, jobs: Iterable[Job]) -> "QueueSnapshotChanged":
        jobs = list(jobs)
        return cls(jobs=[job.to_dict() for job in jobs], stats=queue_stats(jobs))

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "jobs": self.jobs, "stats": self.stats}


Event = Union[JobAdded, JobStatusChanged, QueueSnapshotChanged]

_CLOSED = object()


class Subscription:
    """Bounded per-subscriber buffer; the oldest event is dropped when full."""

    def __init__(self, publisher: "EventPublisher", maxsize: int) -> None:
        self._publisher = publisher
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def offer(self, event: object) -> bool:
        """Enqueue without waiting; return False if an older event was dropped."""
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self._queue.put_nowait(event)
            self.dropped += 1
            return False

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> Event:
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item  # type: ignore[return-value]

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._publisher.unsubscribe(self)
        self.offer(_CLOSED)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Event:
        return await self.get()


class EventPublisher:
    """Delivers events best-effort, at most once, never waiting on a subscriber."""

    def __init__(self, *, buffer_size: int = 256, metrics: Optional[MetricsRegistry] = None) -> None:
        self._buffer_size = buffer_size
        self._subscribers: Set[Subscription] = set()
        self._metrics = metrics or MetricsRegistry()

    def subscribe(self, *, buffer_size: Optional[int] = None) -> Subscription:
        subscription = Subscription(self, buffer_size or self._buffer_size)
        self._subscribers.add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: Event) -> None:
        self._metrics.incr("events_published")
        for subscription in list(self._subscribers):
            try:
                delivered = subscription.offer(event)
            except Exception:  # noqa: BLE001 - a broken subscriber must not reach the publisher
                LOGGER.exception("event_delivery_failed", event_type=event.type)
                self.unsubscribe(subscription)
                continue
            if not delivered:
                self._metrics.incr("events_dropped")
