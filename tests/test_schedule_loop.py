import asyncio
from datetime import datetime, timedelta, timezone

from printdesk.orchestrator.jobs import Job, JobRequest, JobStatus, utcnow
from printdesk.orchestrator import schedule_loop
from printdesk.orchestrator.schedule_loop import next_cleanup_at, run_schedule_loop


def test_next_cleanup_follows_cron():
    now = datetime(2026, 10, 19, 12, 30, tzinfo=timezone.utc)
    assert next_cleanup_at("0 3 * * *", now) == datetime(2026, 10, 20, 3, 0, tzinfo=timezone.utc)


def test_loop_drains_queue_over_ticks(engine_factory):
    async def scenario():
        engine = engine_factory()
        mono = await engine.service.submit({"document_ref": "mono.pdf"})
        colour = await engine.service.submit({"document_ref": "c.pdf", "instructions": {"paper_type": "glossy"}})
        ticks = await run_schedule_loop(engine.coordinator, interval_seconds=0.01, ticks=2)
        assert ticks == 2
        for job_id in (mono.id, colour.id):
            assert (await engine.store.get(job_id)).status is JobStatus.COMPLETED
        assert engine.metrics.get("ticks") == 2

    asyncio.run(scenario())


def test_loop_runs_due_cleanup(engine_factory, monkeypatch):
    monkeypatch.setattr(schedule_loop, "next_cleanup_at", lambda expression, now: now - timedelta(seconds=1))

    async def scenario():
        engine = engine_factory()
        stale = Job.create(JobRequest(document_ref="old"))
        stale.mark_cancelled()
        stale.updated_at = utcnow() - timedelta(days=90)
        await engine.store.put(stale)
        await run_schedule_loop(
            engine.coordinator,
            service=engine.service,
            interval_seconds=0.01,
            cleanup_cron="0 3 * * *",
            ticks=3,
        )
        assert len(engine.store) == 0

    asyncio.run(scenario())


def test_loop_stops_when_stop_event_set(engine_factory):
    async def scenario():
        engine = engine_factory()
        stop = asyncio.Event()

        async def request_stop():
            await asyncio.sleep(0.05)
            stop.set()
            engine.coordinator.wake()

        stopper = asyncio.create_task(request_stop())
        ticks = await asyncio.wait_for(
            run_schedule_loop(engine.coordinator, interval_seconds=10, stop=stop), timeout=2
        )
        await stopper
        assert ticks == 1

    asyncio.run(scenario())
