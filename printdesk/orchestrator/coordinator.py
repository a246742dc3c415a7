"""Drives planned batches through the printer backend."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from functools import partial
from typing import List, Optional

import structlog

from printdesk.documents.resolver import Document, DocumentResolver
from printdesk.events.publisher import EventPublisher, JobStatusChanged, QueueSnapshotChanged
from printdesk.observability.metrics import MetricsRegistry, record_duration
from printdesk.observability.tracing import clear_context, log_transition, set_context, span
from printdesk.orchestrator.errors import (
    DocumentUnavailableError,
    InvalidStateError,
    NotFoundError,
    PersistenceError,
    PrinterUnavailableError,
)
from printdesk.orchestrator.jobs import Job, JobStatus
from printdesk.orchestrator.planner import DEFAULT_MAX_BATCH_SIZE, Batch, PreferencePolicy, Unplaceable, plan_batches
from printdesk.orchestrator.scheduler import select_candidates
from printdesk.orchestrator.store import JobFilter, JobStore, Mutation
from printdesk.printers.backend import PrinterBackend, PrintReceipt
from printdesk.printers.registry import PrinterProfile, PrinterRegistry

LOGGER = structlog.get_logger(__name__)

QUEUED_ONLY = JobFilter(statuses=frozenset({JobStatus.QUEUED}))


@dataclass
class TickResult:
    """What one scheduling tick did."""

    skipped: bool = False
    batch_key: Optional[str] = None
    completed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    cancelled: List[str] = field(default_factory=list)
    unplaceable: List[str] = field(default_factory=list)


class ExecutionCoordinator:
    """Runs one batch per tick; overlapping ticks are skipped, not queued."""

    def __init__(
        self,
        *,
        store: JobStore,
        registry: PrinterRegistry,
        backend: PrinterBackend,
        resolver: DocumentResolver,
        publisher: EventPublisher,
        policy: Optional[PreferencePolicy] = None,
        metrics: Optional[MetricsRegistry] = None,
        document_timeout: float = 30.0,
        print_timeout: float = 300.0,
        status_timeout: float = 5.0,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
    ) -> None:
        self._store = store
        self._registry = registry
        self._backend = backend
        self._resolver = resolver
        self._publisher = publisher
        self._policy = policy or PreferencePolicy()
        self._metrics = metrics or MetricsRegistry()
        self._document_timeout = document_timeout
        self._print_timeout = print_timeout
        self._status_timeout = status_timeout
        self._max_batch_size = max_batch_size
        self._tick_lock = asyncio.Lock()
        self._wake = asyncio.Event()

    @property
    def busy(self) -> bool:
        return self._tick_lock.locked()

    def wake(self) -> None:
        """Ask the schedule loop to tick now instead of waiting out its interval."""
        self._wake.set()

    async def wait_for_wake(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        self._wake.clear()
        return True

    async def tick(self) -> TickResult:
        if self._tick_lock.locked():
            self._metrics.incr("ticks_skipped")
            LOGGER.debug("tick_skipped")
            return TickResult(skipped=True)
        async with self._tick_lock:
            self._metrics.incr("ticks")
            result = TickResult()
            try:
                with record_duration(self._metrics, "tick_duration_ms"):
                    await self._run_tick(result)
            except Exception:  # noqa: BLE001 - the tick loop must survive any failure
                LOGGER.exception("tick_failed", batch_key=result.batch_key)
            if result.batch_key or result.unplaceable:
                self._publisher.publish(QueueSnapshotChanged.from_jobs(await self._store.list()))
            return result

    async def _run_tick(self, result: TickResult) -> None:
        printers = await self._refresh_printers()
        candidates = select_candidates(await self._store.list(QUEUED_ONLY))
        if not candidates:
            return
        plan = plan_batches(candidates, printers, self._policy, max_batch_size=self._max_batch_size)
        for item in plan.unplaceable:
            await self._reject(item, result)
        if not plan.batches:
            return
        batch = plan.batches[0]
        printer = self._registry.get(batch.printer_id)
        result.batch_key = str(batch.key)
        LOGGER.info("batch_selected", batch_key=result.batch_key, jobs=batch.job_ids, pending_batches=len(plan.batches))
        await self._execute_batch(batch, printer, result)

    async def _refresh_printers(self) -> List[PrinterProfile]:
        printer_ids = [profile.printer_id for profile in self._registry.snapshot()]
        outcomes = await asyncio.gather(
            *(self._check_status(printer_id) for printer_id in printer_ids)
        )
        for printer_id, ready in zip(printer_ids, outcomes):
            self._registry.set_available(printer_id, ready)
        return self._registry.snapshot()

    async def _check_status(self, printer_id: str) -> bool:
        try:
            status = await asyncio.wait_for(self._backend.status(printer_id), timeout=self._status_timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("printer_status_timeout", printer_id=printer_id, timeout=self._status_timeout)
            return False
        except Exception as exc:  # noqa: BLE001 - an unreachable printer is just unavailable
            LOGGER.warning("printer_status_failed", printer_id=printer_id, error=str(exc))
            return False
        if not status.ready:
            LOGGER.info("printer_not_ready", printer_id=printer_id, detail=status.detail)
        return status.ready

    async def _apply(self, job_id: str, mutation: Mutation, *, expected_version: Optional[int] = None) -> Job:
        job = await self._store.update(job_id, mutation, expected_version=expected_version)
        log_transition(job_id=job.id, status=job.status.value, progress=job.progress, error=job.error)
        self._publisher.publish(JobStatusChanged.from_job(job))
        return job

    async def _reject(self, item: Unplaceable, result: TickResult) -> None:
        try:
            await self._apply(item.job.id, partial(Job.reject, reason=item.reason), expected_version=item.job.version)
        except (InvalidStateError, NotFoundError) as exc:
            LOGGER.info("reject_skipped", job_id=item.job.id, reason=str(exc))
            return
        self._metrics.incr("jobs_unplaceable")
        self._metrics.incr("jobs_failed")
        result.unplaceable.append(item.job.id)
        LOGGER.warning("job_unplaceable", job_id=item.job.id, reason=item.reason)

    async def _execute_batch(self, batch: Batch, printer: PrinterProfile, result: TickResult) -> None:
        started: List[Job] = []
        for job in batch.jobs:
            try:
                updated = await self._apply(
                    job.id,
                    partial(Job.mark_processing, printer_id=printer.printer_id),
                    expected_version=job.version,
                )
            except (InvalidStateError, NotFoundError) as exc:
                LOGGER.info("pickup_skipped", job_id=job.id, reason=str(exc))
                continue
            started.append(updated)
        self._metrics.record_batch(printer.printer_id, len(started))
        for job in started:
            set_context(job_id=job.id, printer_id=printer.printer_id, batch_key=str(batch.key))
            try:
                await self._execute_job(job, printer, result)
            finally:
                clear_context()

    async def _cancel_requested(self, job: Job, printer: PrinterProfile, result: TickResult) -> None:
        await self._apply(job.id, partial(Job.mark_cancelled, message="Cancelled before printing"))
        self._metrics.record_outcome(printer.printer_id, "cancelled")
        result.cancelled.append(job.id)

    async def _execute_job(self, job: Job, printer: PrinterProfile, result: TickResult) -> None:
        current = await self._store.get(job.id)
        if current.cancel_requested:
            await self._cancel_requested(job, printer, result)
            return
        receipt: Optional[PrintReceipt] = None
        try:
            document = await self._resolve(job)
            await self._apply(job.id, partial(Job.set_progress, value=25))
            # Last point at which a cancellation still stops the print.
            staged = await self._apply(job.id, partial(Job.set_progress, value=50))
            if not staged.cancel_requested:
                receipt = await self._print(document, job, printer)
        except PersistenceError:
            raise
        except Exception as exc:  # noqa: BLE001 - every failure becomes a failed transition
            reason = str(exc) or exc.__class__.__name__
            if isinstance(exc, (DocumentUnavailableError, PrinterUnavailableError)):
                LOGGER.warning("job_execution_failed", error=reason)
            else:
                LOGGER.exception("job_execution_error", error=reason)
            settled = await self._apply(job.id, partial(Job.mark_failed, reason=reason))
            if settled.status is JobStatus.CANCELLED:
                self._metrics.record_outcome(printer.printer_id, "cancelled")
                result.cancelled.append(job.id)
            else:
                self._metrics.record_outcome(printer.printer_id, "failed")
                result.failed.append(job.id)
            return
        if receipt is None:
            await self._cancel_requested(job, printer, result)
            return
        await self._apply(job.id, partial(Job.mark_completed, result=receipt.to_dict()))
        self._metrics.record_outcome(printer.printer_id, "completed")
        result.completed.append(job.id)

    async def _resolve(self, job: Job) -> Document:
        try:
            return await asyncio.wait_for(
                self._resolver.resolve(job.document_ref), timeout=self._document_timeout
            )
        except asyncio.TimeoutError as exc:
            raise DocumentUnavailableError(
                f"Timed out after {self._document_timeout}s resolving document {job.document_ref}"
            ) from exc

    async def _print(self, document: Document, job: Job, printer: PrinterProfile) -> PrintReceipt:
        with span(name="print", document=document.name, copies=job.instructions.copies):
            try:
                return await asyncio.wait_for(
                    self._backend.print(document, job.instructions, printer),
                    timeout=self._print_timeout,
                )
            except asyncio.TimeoutError as exc:
                raise PrinterUnavailableError(
                    f"Printer {printer.printer_id} did not finish within {self._print_timeout}s"
                ) from exc
