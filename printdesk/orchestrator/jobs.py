"""Definitions for print jobs and their lifecycle."""
from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

from printdesk.orchestrator.errors import InvalidStateError, RetryLimitExceededError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})

# processing -> cancelled is only taken for a deferred cancellation request.
ALLOWED_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.FAILED: frozenset({JobStatus.QUEUED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


class PaperSize(str, Enum):
    A4 = "a4"
    A3 = "a3"
    LETTER = "letter"
    LEGAL = "legal"


class PaperType(str, Enum):
    PLAIN = "plain"
    PHOTO = "photo"
    GLOSSY = "glossy"


class PriorityTier(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


class QualityTier(str, Enum):
    DRAFT = "draft"
    NORMAL = "normal"
    HIGH = "high"


class PrintInstructions(BaseModel):
    """Structured print instructions attached to a job."""

    copies: int = Field(default=1, ge=1, le=100)
    paper_size: PaperSize = PaperSize.A4
    paper_type: PaperType = PaperType.PLAIN
    color_pages: List[int] = Field(default_factory=list)
    priority: PriorityTier = PriorityTier.NORMAL
    quality: QualityTier = QualityTier.NORMAL
    deadline: Optional[str] = None
    duplex: bool = False

    @field_validator("paper_size", "paper_type", "priority", "quality", mode="before")
    @classmethod
    def _lower(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("color_pages")
    @classmethod
    def _ordered_pages(cls, value: List[int]) -> List[int]:
        if any(page < 1 for page in value):
            raise ValueError("colour page numbers start at 1")
        return sorted(set(value))

    @property
    def requires_color(self) -> bool:
        """Return True when only a colour-capable printer can take the job."""
        return bool(self.color_pages) or self.paper_type in (PaperType.PHOTO, PaperType.GLOSSY)


class JobRequest(BaseModel):
    """Inbound submission handed over by the messaging bridge or dashboard."""

    document_ref: str = Field(min_length=1)
    instructions: PrintInstructions = Field(default_factory=PrintInstructions)
    submitter: Optional[str] = None
    priority: Optional[int] = None


def compute_priority(instructions: PrintInstructions) -> int:
    """Derive the scheduling score for a set of instructions."""
    priority = 0
    if instructions.priority is PriorityTier.URGENT:
        priority += 3
    elif instructions.priority is PriorityTier.HIGH:
        priority += 2
    if instructions.deadline:
        priority += 2
    if instructions.color_pages:
        priority += 1
    if instructions.copies > 1:
        priority += 1
    return priority


_TIMESTAMP_FIELDS = ("created_at", "updated_at")


@dataclass
class Job:
    """Represents a unit of print work tracked by the queue."""

    id: str
    document_ref: str
    instructions: PrintInstructions
    priority: int = 0
    status: JobStatus = JobStatus.QUEUED
    submitter: Optional[str] = None
    progress: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    error: Optional[str] = None
    retry_count: int = 0
    accepted_by: Optional[str] = None
    printer_id: Optional[str] = None
    cancel_requested: bool = False
    result: Optional[Dict[str, Any]] = None
    version: int = 0
    history: List[Dict[str, str]] = field(default_factory=list)

    @classmethod
    def create(cls, request: JobRequest) -> "Job":
        """Build a freshly queued job from a submission."""
        priority = request.priority
        if priority is None:
            priority = compute_priority(request.instructions)
        job = cls(
            id=str(uuid.uuid4()),
            document_ref=request.document_ref,
            instructions=request.instructions,
            priority=priority,
            submitter=request.submitter,
        )
        job.note("Job queued")
        return job

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def note(self, message: str) -> None:
        """Append an entry to the job's audit trail."""
        self.history.append({
            "at": utcnow().isoformat(),
            "status": self.status.value,
            "message": message,
        })

    def transition(self, target: JobStatus, message: str) -> None:
        """Move to ``target`` if the lifecycle allows it."""
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStateError(
                f"Job {self.id} cannot move from {self.status.value} to {target.value}"
            )
        if target is JobStatus.CANCELLED and self.status is JobStatus.PROCESSING and not self.cancel_requested:
            raise InvalidStateError(f"Job {self.id} is processing; cancellation must be requested first")
        self.status = target
        self.updated_at = utcnow()
        if target is not JobStatus.FAILED:
            self.error = None
        if target is JobStatus.PROCESSING:
            self.progress = 0
        self.note(message)

    def mark_processing(self, *, printer_id: Optional[str] = None, accepted_by: Optional[str] = None) -> None:
        """Transition the job into the processing state."""
        if accepted_by is not None:
            self.accepted_by = accepted_by
            message = f"Accepted by {accepted_by}"
        else:
            message = f"Dispatched to {printer_id}"
        self.printer_id = printer_id
        self.transition(JobStatus.PROCESSING, message)

    def set_progress(self, value: int) -> None:
        """Advance progress; it never moves backwards while processing."""
        if self.status is not JobStatus.PROCESSING:
            raise InvalidStateError(f"Job {self.id} is not processing")
        self.progress = max(self.progress, min(100, value))
        self.updated_at = utcnow()

    def mark_completed(self, result: Optional[Dict[str, Any]] = None) -> None:
        """Mark the job as successfully printed."""
        if self.cancel_requested:
            self.cancel_requested = False
            self.note("Cancellation arrived after printing started; job completed")
        self.transition(JobStatus.COMPLETED, "Completed")
        self.progress = 100
        self.result = result

    def mark_failed(self, reason: str) -> None:
        """Record a failure, or settle a pending cancellation instead."""
        if self.cancel_requested:
            self.transition(JobStatus.CANCELLED, f"Cancelled as requested after failure: {reason}")
            return
        self.transition(JobStatus.FAILED, f"Failed: {reason}")
        self.error = reason

    def mark_cancelled(self, message: str = "Cancelled") -> None:
        self.transition(JobStatus.CANCELLED, message)

    def reject(self, reason: str) -> None:
        """Fail a queued job that could not be dispatched at all."""
        self.transition(JobStatus.PROCESSING, "Picked up for dispatch")
        self.mark_failed(reason)

    def request_cancel(self) -> None:
        """Record a cancellation to be honoured once the in-flight work resolves."""
        if self.status is not JobStatus.PROCESSING:
            raise InvalidStateError(f"Job {self.id} is {self.status.value}; nothing to defer")
        if self.cancel_requested:
            raise InvalidStateError(f"Cancellation already requested for job {self.id}")
        self.cancel_requested = True
        self.updated_at = utcnow()
        self.note("Cancellation requested while processing")

    def requeue_for_retry(self, max_retries: int) -> None:
        """Send a failed job back to the queue, consuming one retry."""
        if self.status is not JobStatus.FAILED:
            raise InvalidStateError(f"Only failed jobs can be retried; job {self.id} is {self.status.value}")
        if self.retry_count >= max_retries:
            raise RetryLimitExceededError(
                f"Job {self.id} has already been retried {self.retry_count} times (limit {max_retries})"
            )
        self.retry_count += 1
        self.cancel_requested = False
        self.result = None
        self.printer_id = None
        self.progress = 0
        self.accepted_by = None
        self.transition(JobStatus.QUEUED, f"Retry attempt {self.retry_count}")

    def change_priority(self, priority: int) -> None:
        if self.status not in (JobStatus.QUEUED, JobStatus.FAILED):
            raise InvalidStateError(f"Cannot change priority while job {self.id} is {self.status.value}")
        previous, self.priority = self.priority, priority
        self.updated_at = utcnow()
        self.note(f"Priority changed from {previous} to {priority}")

    def clone(self) -> "Job":
        return Job.from_dict(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        """Serialise every field into JSON-compatible values."""
        payload = asdict(self)
        payload["instructions"] = self.instructions.model_dump(mode="json")
        payload["status"] = self.status.value
        for key in _TIMESTAMP_FIELDS:
            payload[key] = getattr(self, key).isoformat()
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Job":
        """Rebuild a job, ignoring keys this version does not know about."""
        known = {item.name for item in fields(cls)}
        payload = {key: value for key, value in data.items() if key in known}
        payload["instructions"] = PrintInstructions.model_validate(payload.get("instructions") or {})
        payload["status"] = JobStatus(payload.get("status", JobStatus.QUEUED.value))
        for key in _TIMESTAMP_FIELDS:
            if isinstance(payload.get(key), str):
                payload[key] = datetime.fromisoformat(payload[key])
        payload["history"] = [dict(entry) for entry in payload.get("history") or []]
        if payload.get("result") is not None:
            payload["result"] = dict(payload["result"])
        return cls(**payload)


def queue_stats(jobs: Iterable[Job]) -> Dict[str, int]:
    """Count jobs per lifecycle bucket."""
    stats = {"total": 0, "pending": 0, "processing": 0, "completed": 0, "failed": 0, "cancelled": 0}
    for job in jobs:
        stats["total"] += 1
        if job.status is JobStatus.QUEUED:
            stats["pending"] += 1
        else:
            stats[job.status.value] += 1
    return stats
