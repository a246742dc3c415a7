"""Durable job table backed by a JSON Lines snapshot."""
from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional

import orjson
import structlog

from printdesk.orchestrator.errors import InvalidStateError, NotFoundError, PersistenceError, StaleWriteError
from printdesk.orchestrator.jobs import Job, JobStatus, utcnow

LOGGER = structlog.get_logger(__name__)

Mutation = Callable[[Job], None]


@dataclass(frozen=True)
class JobFilter:
    """Selection criteria for ``JobStore.list``."""

    statuses: Optional[FrozenSet[JobStatus]] = None
    submitter: Optional[str] = None
    printer_id: Optional[str] = None
    limit: Optional[int] = None

    def matches(self, job: Job) -> bool:
        if self.statuses is not None and job.status not in self.statuses:
            return False
        if self.submitter is not None and job.submitter != self.submitter:
            return False
        if self.printer_id is not None and job.printer_id != self.printer_id:
            return False
        return True


class JobStore:
    """Single source of truth for job state, persisted for crash recovery.

    Every write stages a new copy of the table, writes the whole snapshot to a
    temporary file, fsyncs it and atomically swaps it into place. The in-memory
    table only changes once that succeeds, so what callers see never runs ahead
    of what is on disk.
    """

    def __init__(self, *, path: Path) -> None:
        self._path = path
        self._jobs: Dict[str, Job] = {}
        self._lock = asyncio.Lock()
        self._load_from_disk()

    @property
    def path(self) -> Path:
        return self._path

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            return
        try:
            lines = self._path.read_bytes().splitlines()
        except OSError as exc:
            raise PersistenceError(f"Cannot read job snapshot {self._path}: {exc}") from exc
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                job = Job.from_dict(orjson.loads(line))
            except (orjson.JSONDecodeError, ValueError, TypeError) as exc:
                raise PersistenceError(f"Corrupt job record on line {number} of {self._path}: {exc}") from exc
            self._jobs[job.id] = job
        LOGGER.info("job_store_loaded", path=str(self._path), jobs=len(self._jobs))

    async def _persist(self, jobs: Dict[str, Job]) -> None:
        records = [job.to_dict() for job in jobs.values()]
        await asyncio.to_thread(self._write_snapshot, records)

    def _write_snapshot(self, records: List[Dict[str, object]]) -> None:
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("wb") as handle:
                for record in records:
                    handle.write(orjson.dumps(record))
                    handle.write(b"\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self._path)
            self._sync_directory()
        except OSError as exc:
            tmp_path.unlink(missing_ok=True)
            raise PersistenceError(f"Failed to write job snapshot {self._path}: {exc}") from exc

    def _sync_directory(self) -> None:
        if not hasattr(os, "O_DIRECTORY"):
            return
        fd = os.open(self._path.parent, os.O_RDONLY | os.O_DIRECTORY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    async def put(self, job: Job) -> Job:
        """Insert a new job; ids are never reused."""
        async with self._lock:
            if job.id in self._jobs:
                raise InvalidStateError(f"Job {job.id} already exists")
            staged = dict(self._jobs)
            staged[job.id] = job.clone()
            await self._persist(staged)
            self._jobs = staged
            return job.clone()

    async def get(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(job_id)
        return job.clone()

    async def list(self, job_filter: Optional[JobFilter] = None) -> List[Job]:
        """Return matching jobs ordered by creation time."""
        job_filter = job_filter or JobFilter()
        jobs = [job.clone() for job in self._jobs.values() if job_filter.matches(job)]
        jobs.sort(key=lambda job: job.created_at)
        if job_filter.limit is not None:
            jobs = jobs[: job_filter.limit]
        return jobs

    async def update(self, job_id: str, mutation: Mutation, *, expected_version: Optional[int] = None) -> Job:
        """Apply ``mutation`` to the current record and commit it atomically.

        The mutation runs against a copy while the store lock is held, so any
        precondition it checks sees the latest committed state. Raising from
        the mutation abandons the write. ``expected_version`` turns the call
        into a compare-and-swap against the version the caller last read.
        """
        async with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise NotFoundError(job_id)
            if expected_version is not None and current.version != expected_version:
                raise StaleWriteError(
                    f"Job {job_id} changed (version {current.version}, expected {expected_version})"
                )
            updated = current.clone()
            mutation(updated)
            updated.version = current.version + 1
            updated.updated_at = utcnow()
            staged = dict(self._jobs)
            staged[job_id] = updated
            await self._persist(staged)
            self._jobs = staged
            return updated.clone()

    async def delete(self, job_id: str) -> bool:
        async with self._lock:
            if job_id not in self._jobs:
                return False
            staged = {key: job for key, job in self._jobs.items() if key != job_id}
            await self._persist(staged)
            self._jobs = staged
            return True

    async def delete_where(self, predicate: Callable[[Job], bool]) -> List[str]:
        """Remove every job matching ``predicate`` in a single snapshot write."""
        async with self._lock:
            doomed = [job_id for job_id, job in self._jobs.items() if predicate(job)]
            if not doomed:
                return []
            staged = {key: job for key, job in self._jobs.items() if key not in doomed}
            await self._persist(staged)
            self._jobs = staged
            return doomed

    def __len__(self) -> int:
        return len(self._jobs)
