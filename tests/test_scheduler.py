import random
from datetime import timedelta

import pytest

from printdesk.orchestrator.jobs import Job, JobRequest, JobStatus, utcnow
from printdesk.orchestrator.scheduler import select_candidates


def _job(ref: str, priority: int, offset: int) -> Job:
    job = Job.create(JobRequest(document_ref=ref, priority=priority))
    job.created_at = utcnow() + timedelta(seconds=offset)
    return job


def test_fifo_within_same_priority():
    jobs = [_job(f"doc-{index}", 1, index) for index in range(6)]
    assert [job.document_ref for job in select_candidates(jobs)] == [job.document_ref for job in jobs]


def test_higher_priority_runs_first():
    j1 = _job("j1", 0, 0)
    j2 = _job("j2", 3, 1)
    assert [job.document_ref for job in select_candidates([j1, j2])] == ["j2", "j1"]


def test_only_queued_jobs_are_candidates():
    waiting = _job("waiting", 0, 0)
    running = _job("running", 5, 1)
    running.status = JobStatus.PROCESSING
    assert select_candidates([waiting, running]) == [waiting]


@pytest.mark.parametrize("seed", range(10))
def test_order_never_places_lower_priority_or_newer_job_first(seed):
    rng = random.Random(seed)
    jobs = [_job(f"doc-{index}", rng.randint(0, 4), rng.randint(0, 30)) for index in range(20)]
    ordered = select_candidates(jobs)
    assert len(ordered) == len(jobs)
    for earlier, later in zip(ordered, ordered[1:]):
        assert earlier.priority >= later.priority
        if earlier.priority == later.priority:
            assert earlier.created_at <= later.created_at
    assert select_candidates(jobs) == ordered
