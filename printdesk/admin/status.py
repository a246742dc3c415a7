"""Read-only helpers over the persisted job snapshot."""
from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import orjson

from printdesk.orchestrator.errors import PersistenceError
from printdesk.orchestrator.jobs import Job, JobStatus, queue_stats, utcnow


def load_jobs(path: Path) -> List[Job]:
    """Read the job snapshot without taking the store's write path."""
    if not path.exists():
        return []
    jobs: List[Job] = []
    for number, line in enumerate(path.read_bytes().splitlines(), start=1):
        if not line.strip():
            continue
        try:
            jobs.append(Job.from_dict(orjson.loads(line)))
        except (orjson.JSONDecodeError, ValueError, TypeError) as exc:
            raise PersistenceError(f"Corrupt job record on line {number} of {path}: {exc}") from exc
    jobs.sort(key=lambda job: job.created_at)
    return jobs


def summarise_jobs(jobs: Iterable[Job]) -> Dict[str, object]:
    """Queue counters plus a per-printer breakdown of settled work."""
    jobs = list(jobs)
    by_printer: Dict[str, Dict[str, int]] = {}
    for job in jobs:
        if job.printer_id is None:
            continue
        counts = by_printer.setdefault(job.printer_id, {"completed": 0, "failed": 0})
        if job.status is JobStatus.COMPLETED:
            counts["completed"] += 1
        elif job.status is JobStatus.FAILED:
            counts["failed"] += 1
    return {**queue_stats(jobs), "by_printer": by_printer}


def failure_reasons(
    jobs: Iterable[Job],
    *,
    printer_id: Optional[str] = None,
    days: int = 7,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Count failure messages of failed jobs updated within the lookback window."""
    cutoff = (now or utcnow()) - timedelta(days=days)
    counter: Counter[str] = Counter()
    for job in jobs:
        if job.status is not JobStatus.FAILED or job.updated_at < cutoff:
            continue
        if printer_id and job.printer_id != printer_id:
            continue
        counter[job.error or "unknown"] += 1
    return dict(counter)
