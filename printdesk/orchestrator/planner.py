"""Group scheduled jobs into printer-compatible batches."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from printdesk.orchestrator.errors import PrinterUnavailableError
from printdesk.orchestrator.jobs import Job, JobStatus, PrintInstructions
from printdesk.printers.registry import PrinterProfile

DEFAULT_MAX_BATCH_SIZE = 5


@dataclass(frozen=True)
class PreferencePolicy:
    """Which printer tag wins among eligible printers for each workload."""

    prefer_for_color: str = "color"
    prefer_for_mono: str = "speed"

    def preferred_tag(self, instructions: PrintInstructions) -> str:
        return self.prefer_for_color if instructions.requires_color else self.prefer_for_mono


@dataclass(frozen=True)
class CompatibilityKey:
    printer_id: str
    paper_type: str
    quality: str

    def __str__(self) -> str:
        return f"{self.printer_id}:{self.paper_type}:{self.quality}"


@dataclass
class Batch:
    """Jobs that can run back to back on one printer configuration."""

    key: CompatibilityKey
    jobs: List[Job] = field(default_factory=list)

    @property
    def printer_id(self) -> str:
        return self.key.printer_id

    @property
    def job_ids(self) -> List[str]:
        return [job.id for job in self.jobs]


@dataclass
class Unplaceable:
    job: Job
    reason: str


@dataclass
class BatchPlan:
    batches: List[Batch] = field(default_factory=list)
    unplaceable: List[Unplaceable] = field(default_factory=list)


def eligible_printers(instructions: PrintInstructions, printers: Iterable[PrinterProfile]) -> List[PrinterProfile]:
    """Printers that are up and can physically produce the job."""
    eligible = []
    for printer in printers:
        if not printer.enabled or not printer.available:
            continue
        if instructions.requires_color and not printer.color:
            continue
        if not printer.supports(instructions.paper_size, instructions.paper_type):
            continue
        eligible.append(printer)
    return eligible


def select_printer(
    instructions: PrintInstructions,
    printers: Sequence[PrinterProfile],
    policy: PreferencePolicy,
) -> PrinterProfile:
    """Pick the preferred eligible printer, deterministic for a given registry."""
    eligible = eligible_printers(instructions, printers)
    if not eligible:
        needs = "colour" if instructions.requires_color else "any"
        raise PrinterUnavailableError(
            f"No available printer supports {needs} printing on "
            f"{instructions.paper_size.value} {instructions.paper_type.value} paper"
        )
    order = {printer.printer_id: idx for idx, printer in enumerate(printers)}
    tag = policy.preferred_tag(instructions)
    return min(
        eligible,
        key=lambda printer: (tag not in printer.tags, printer.rank, order[printer.printer_id]),
    )


def compatibility_key(job: Job, printer_id: str) -> CompatibilityKey:
    return CompatibilityKey(
        printer_id=printer_id,
        paper_type=job.instructions.paper_type.value,
        quality=job.instructions.quality.value,
    )


def plan_batches(
    candidates: Iterable[Job],
    printers: Sequence[PrinterProfile],
    policy: PreferencePolicy | None = None,
    *,
    max_batch_size: Optional[int] = DEFAULT_MAX_BATCH_SIZE,
) -> BatchPlan:
    """Group ``candidates`` (already in dispatch order) by compatibility key.

    Batches come out ordered by their highest-ranked job and keep the
    scheduler order inside each batch. A full batch is closed and later
    jobs with the same key open a new one; ``None`` disables the cap. Jobs
    no printer can take are reported as unplaceable; nothing here touches
    the job store.
    """
    policy = policy or PreferencePolicy()
    plan = BatchPlan()
    open_batches: Dict[CompatibilityKey, Batch] = {}
    for job in candidates:
        try:
            printer = select_printer(job.instructions, printers, policy)
        except PrinterUnavailableError as exc:
            plan.unplaceable.append(Unplaceable(job=job, reason=str(exc)))
            continue
        key = compatibility_key(job, printer.printer_id)
        batch = open_batches.get(key)
        if batch is None or (max_batch_size is not None and len(batch.jobs) >= max_batch_size):
            batch = Batch(key=key)
            open_batches[key] = batch
            plan.batches.append(batch)
        batch.jobs.append(job)
    return plan


def planned_batch_keys(
    jobs: Iterable[Job],
    printers: Sequence[PrinterProfile],
    policy: PreferencePolicy | None = None,
) -> Dict[str, str]:
    """Batch key per pending or in-flight job, ``unbatched`` when no printer fits."""
    policy = policy or PreferencePolicy()
    keys: Dict[str, str] = {}
    for job in jobs:
        if job.status is JobStatus.PROCESSING and job.printer_id:
            keys[job.id] = str(compatibility_key(job, job.printer_id))
        elif job.status is JobStatus.QUEUED:
            try:
                printer = select_printer(job.instructions, printers, policy)
            except PrinterUnavailableError:
                keys[job.id] = "unbatched"
                continue
            keys[job.id] = str(compatibility_key(job, printer.printer_id))
    return keys
