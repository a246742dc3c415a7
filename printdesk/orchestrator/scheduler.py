"""Priority ordering of queued jobs for dispatch."""
from __future__ import annotations

from typing import Iterable, List

from printdesk.orchestrator.jobs import Job, JobStatus


def dispatch_order(job: Job) -> tuple:
    """Sort key: highest priority first, then oldest first within a priority."""
    return (-job.priority, job.created_at)


def select_candidates(jobs: Iterable[Job]) -> List[Job]:
    """Return the queued jobs from ``jobs`` in the order they should run.

    Pure function of its input: only ``status``, ``priority`` and
    ``created_at`` are consulted, and ties that survive both keys keep the
    order they were supplied in.
    """
    queued = [job for job in jobs if job.status is JobStatus.QUEUED]
    return sorted(queued, key=dispatch_order)
