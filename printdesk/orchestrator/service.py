"""Operator and submission API over the job store."""
from __future__ import annotations

from datetime import datetime, timedelta
from functools import partial
from typing import Any, Dict, List, Mapping, Optional, Union

import structlog

from printdesk.events.publisher import (
    EventPublisher,
    JobAdded,
    JobStatusChanged,
    QueueSnapshotChanged,
    Subscription,
)
from printdesk.observability.metrics import MetricsRegistry
from printdesk.orchestrator.coordinator import ExecutionCoordinator
from printdesk.orchestrator.errors import InvalidStateError
from printdesk.orchestrator.jobs import Job, JobRequest, JobStatus, queue_stats, utcnow
from printdesk.orchestrator.store import JobFilter, JobStore, Mutation

LOGGER = structlog.get_logger(__name__)

CLEANUP_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED})


def _cancel(job: Job) -> None:
    if job.status is JobStatus.PROCESSING:
        job.request_cancel()
        return
    if job.status is not JobStatus.QUEUED:
        raise InvalidStateError(f"Cannot cancel job {job.id}: it is {job.status.value}")
    job.mark_cancelled()


def _require_accepted(job: Job) -> None:
    if job.status is not JobStatus.PROCESSING or job.accepted_by is None:
        raise InvalidStateError(f"Job {job.id} is not being handled by an operator")


def _complete_accepted(job: Job) -> None:
    _require_accepted(job)
    job.mark_completed({"accepted_by": job.accepted_by, "message": "Completed by operator"})


def _fail_accepted(job: Job, reason: str) -> None:
    _require_accepted(job)
    job.mark_failed(reason)


def _interrupt(job: Job) -> None:
    if job.status is not JobStatus.PROCESSING or job.accepted_by is not None:
        raise InvalidStateError(f"Job {job.id} was not interrupted")
    job.mark_failed("Interrupted by a restart before printing finished")


class PrintQueueService:
    """Entry point used by the messaging bridge, the dashboard and the CLI."""

    def __init__(
        self,
        *,
        store: JobStore,
        publisher: EventPublisher,
        coordinator: Optional[ExecutionCoordinator] = None,
        metrics: Optional[MetricsRegistry] = None,
        max_retries: int = 3,
        retention: timedelta = timedelta(days=7),
    ) -> None:
        self._store = store
        self._publisher = publisher
        self._coordinator = coordinator
        self._metrics = metrics or MetricsRegistry()
        self._max_retries = max_retries
        self._retention = retention

    @property
    def max_retries(self) -> int:
        return self._max_retries

    async def _publish_snapshot(self) -> None:
        self._publisher.publish(QueueSnapshotChanged.from_jobs(await self._store.list()))

    async def _mutate(self, job_id: str, mutation: Mutation) -> Job:
        job = await self._store.update(job_id, mutation)
        self._publisher.publish(JobStatusChanged.from_job(job))
        await self._publish_snapshot()
        return job

    async def submit(self, request: Union[JobRequest, Mapping[str, Any]]) -> Job:
        """Queue a new print job and nudge the scheduler."""
        if not isinstance(request, JobRequest):
            request = JobRequest.model_validate(request)
        job = await self._store.put(Job.create(request))
        self._metrics.incr("jobs_submitted")
        LOGGER.info("job_submitted", job_id=job.id, priority=job.priority, submitter=job.submitter)
        self._publisher.publish(JobAdded.from_job(job))
        await self._publish_snapshot()
        if self._coordinator is not None:
            self._coordinator.wake()
        return job

    async def accept_job(self, job_id: str, operator: str) -> Job:
        """Hand a queued job to a human operator, bypassing the scheduler."""
        job = await self._mutate(job_id, partial(Job.mark_processing, accepted_by=operator))
        LOGGER.info("job_accepted", job_id=job_id, operator=operator)
        return job

    async def complete_job(self, job_id: str) -> Job:
        job = await self._mutate(job_id, _complete_accepted)
        self._metrics.incr("jobs_completed")
        return job

    async def fail_job(self, job_id: str, reason: str) -> Job:
        job = await self._mutate(job_id, partial(_fail_accepted, reason=reason))
        self._metrics.incr("jobs_cancelled" if job.status is JobStatus.CANCELLED else "jobs_failed")
        return job

    async def cancel_job(self, job_id: str) -> Job:
        """Cancel a queued job now, or record the request for a processing one.

        The returned job is ``cancelled`` when the cancellation applied
        immediately, or still ``processing`` with ``cancel_requested`` set when
        it was deferred.
        """
        job = await self._mutate(job_id, _cancel)
        if job.status is JobStatus.CANCELLED:
            self._metrics.incr("jobs_cancelled")
            LOGGER.info("job_cancelled", job_id=job_id)
        else:
            LOGGER.info("job_cancel_deferred", job_id=job_id)
        return job

    async def retry_job(self, job_id: str) -> Job:
        job = await self._mutate(job_id, partial(Job.requeue_for_retry, max_retries=self._max_retries))
        self._metrics.incr("jobs_retried")
        LOGGER.info("job_retried", job_id=job_id, retry_count=job.retry_count)
        if self._coordinator is not None:
            self._coordinator.wake()
        return job

    async def change_priority(self, job_id: str, priority: int) -> Job:
        return await self._mutate(job_id, partial(Job.change_priority, priority=priority))

    async def remove_job(self, job_id: str) -> None:
        """Delete a job that is not currently processing."""
        job = await self._store.get(job_id)
        if job.status is JobStatus.PROCESSING:
            raise InvalidStateError(f"Cannot remove job {job_id} while it is processing")
        await self._store.delete(job_id)
        self._metrics.incr("jobs_removed")
        LOGGER.info("job_removed", job_id=job_id)
        await self._publish_snapshot()

    async def get_job(self, job_id: str) -> Job:
        return await self._store.get(job_id)

    async def list_jobs(self, job_filter: Optional[JobFilter] = None) -> List[Job]:
        return await self._store.list(job_filter)

    async def get_stats(self) -> Dict[str, int]:
        return queue_stats(await self._store.list())

    def subscribe(self, *, buffer_size: Optional[int] = None) -> Subscription:
        return self._publisher.subscribe(buffer_size=buffer_size)

    async def cleanup(self, *, retention: Optional[timedelta] = None, now: Optional[datetime] = None) -> int:
        """Delete settled jobs older than the retention window."""
        cutoff = (now or utcnow()) - (retention or self._retention)
        removed = await self._store.delete_where(
            lambda job: job.status in CLEANUP_STATUSES and job.updated_at < cutoff
        )
        if removed:
            self._metrics.incr("jobs_removed", len(removed))
            LOGGER.info("jobs_cleaned_up", removed=len(removed), cutoff=cutoff.isoformat())
            await self._publish_snapshot()
        return len(removed)

    async def recover_interrupted(self) -> List[Job]:
        """Fail jobs a previous process left mid-print so nothing re-prints unseen."""
        recovered: List[Job] = []
        for job in await self._store.list(JobFilter(statuses=frozenset({JobStatus.PROCESSING}))):
            if job.accepted_by is not None:
                continue
            settled = await self._store.update(job.id, _interrupt)
            self._publisher.publish(JobStatusChanged.from_job(settled))
            recovered.append(settled)
        if recovered:
            LOGGER.warning("jobs_recovered", jobs=[job.id for job in recovered])
            await self._publish_snapshot()
        return recovered
