import asyncio

from printdesk.events.publisher import JobStatusChanged, QueueSnapshotChanged
from printdesk.orchestrator.jobs import JobStatus


def test_batch_runs_to_completion_with_progress_events(engine_factory):
    async def scenario():
        engine = engine_factory()
        subscription = engine.service.subscribe()
        job = await engine.service.submit({"document_ref": "report.pdf"})
        result = await engine.coordinator.tick()
        assert result.completed == [job.id]
        done = await engine.store.get(job.id)
        assert done.status is JobStatus.COMPLETED
        assert done.printer_id == "mono_laser"
        assert done.result["reference"] == "req-1"
        events = []
        while subscription.pending():
            events.append(await subscription.get())
        progress = [event.progress for event in events if isinstance(event, JobStatusChanged)]
        assert progress == [0, 25, 50, 100]
        assert isinstance(events[-1], QueueSnapshotChanged)
        assert events[-1].stats["completed"] == 1

    asyncio.run(scenario())


def test_one_failure_does_not_stop_the_batch(engine_factory):
    async def scenario():
        engine = engine_factory(fail_for={"b.pdf"})
        jobs = [await engine.service.submit({"document_ref": ref}) for ref in ("a.pdf", "b.pdf", "c.pdf")]
        result = await engine.coordinator.tick()
        assert result.completed == [jobs[0].id, jobs[2].id]
        assert result.failed == [jobs[1].id]
        failed = await engine.store.get(jobs[1].id)
        assert failed.status is JobStatus.FAILED
        assert "paper jam" in failed.error
        assert failed.retry_count == 0
        assert [ref for ref, _ in engine.backend.printed] == ["a.pdf", "c.pdf"]

    asyncio.run(scenario())


def test_missing_document_fails_job(engine_factory):
    async def scenario():
        engine = engine_factory(missing={"gone.pdf"})
        job = await engine.service.submit({"document_ref": "gone.pdf"})
        await engine.coordinator.tick()
        failed = await engine.store.get(job.id)
        assert failed.status is JobStatus.FAILED
        assert "gone.pdf" in failed.error

    asyncio.run(scenario())


def test_timeouts_become_failures(engine_factory):
    async def scenario():
        slow_print = engine_factory(print_delay=0.5, print_timeout=0.05)
        job = await slow_print.service.submit({"document_ref": "slow.pdf"})
        await slow_print.coordinator.tick()
        failed = await slow_print.store.get(job.id)
        assert failed.status is JobStatus.FAILED
        assert "did not finish" in failed.error

    async def resolve_scenario():
        slow_resolve = engine_factory(resolve_delay=0.5, document_timeout=0.05)
        job = await slow_resolve.service.submit({"document_ref": "remote.pdf"})
        await slow_resolve.coordinator.tick()
        failed = await slow_resolve.store.get(job.id)
        assert failed.status is JobStatus.FAILED
        assert "Timed out" in failed.error

    asyncio.run(scenario())
    asyncio.run(resolve_scenario())


def test_overlapping_tick_is_skipped(engine_factory):
    async def scenario():
        engine = engine_factory(print_delay=0.2)
        await engine.service.submit({"document_ref": "a.pdf"})
        first = asyncio.create_task(engine.coordinator.tick())
        await asyncio.sleep(0.05)
        assert engine.coordinator.busy
        second = await engine.coordinator.tick()
        assert second.skipped
        assert not (await first).skipped
        assert engine.metrics.get("ticks_skipped") == 1

    asyncio.run(scenario())


def test_one_batch_per_tick(engine_factory):
    async def scenario():
        engine = engine_factory()
        mono = await engine.service.submit({"document_ref": "mono.pdf"})
        colour = await engine.service.submit({"document_ref": "colour.pdf", "instructions": {"color_pages": [1]}})
        first = await engine.coordinator.tick()
        assert first.completed == [colour.id]
        assert (await engine.store.get(mono.id)).status is JobStatus.QUEUED
        second = await engine.coordinator.tick()
        assert second.completed == [mono.id]

    asyncio.run(scenario())


def test_cancel_during_processing_before_print(engine_factory):
    async def scenario():
        engine = engine_factory(resolve_delay=0.3)
        first = await engine.service.submit({"document_ref": "a.pdf"})
        second = await engine.service.submit({"document_ref": "b.pdf"})
        tick = asyncio.create_task(engine.coordinator.tick())
        await asyncio.sleep(0.1)
        pending = await engine.service.cancel_job(second.id)
        assert pending.status is JobStatus.PROCESSING
        assert pending.cancel_requested
        result = await tick
        assert result.completed == [first.id]
        assert result.cancelled == [second.id]
        assert (await engine.store.get(second.id)).status is JobStatus.CANCELLED
        assert [ref for ref, _ in engine.backend.printed] == ["a.pdf"]

    asyncio.run(scenario())


def test_cancel_during_print_lets_success_stand(engine_factory):
    async def scenario():
        engine = engine_factory(print_delay=0.3)
        job = await engine.service.submit({"document_ref": "a.pdf"})
        tick = asyncio.create_task(engine.coordinator.tick())
        await asyncio.sleep(0.1)
        await engine.service.cancel_job(job.id)
        await tick
        done = await engine.store.get(job.id)
        assert done.status is JobStatus.COMPLETED
        assert not done.cancel_requested

    asyncio.run(scenario())


def test_unplaceable_job_fails_without_blocking_others(engine_factory):
    async def scenario():
        engine = engine_factory()
        stuck = await engine.service.submit(
            {"document_ref": "poster.pdf", "instructions": {"paper_size": "a3", "paper_type": "photo"}}
        )
        fine = await engine.service.submit({"document_ref": "memo.pdf"})
        result = await engine.coordinator.tick()
        assert result.unplaceable == [stuck.id]
        assert result.completed == [fine.id]
        failed = await engine.store.get(stuck.id)
        assert failed.status is JobStatus.FAILED
        assert "No available printer" in failed.error
        assert engine.metrics.get("jobs_unplaceable") == 1

    asyncio.run(scenario())


def test_printer_status_check_marks_printers_unavailable(engine_factory):
    async def scenario():
        engine = engine_factory(ready={"color_laser": False})
        colour = await engine.service.submit({"document_ref": "c.pdf", "instructions": {"color_pages": [1]}})
        await engine.coordinator.tick()
        assert (await engine.store.get(colour.id)).status is JobStatus.FAILED
        assert engine.registry.get("color_laser").available is False

    asyncio.run(scenario())


def test_cancel_while_resolving_stops_the_print(engine_factory):
    async def scenario():
        engine = engine_factory(resolve_delay=0.3)
        job = await engine.service.submit({"document_ref": "only.pdf"})
        tick = asyncio.create_task(engine.coordinator.tick())
        await asyncio.sleep(0.1)
        pending = await engine.service.cancel_job(job.id)
        assert pending.status is JobStatus.PROCESSING
        result = await tick
        assert result.cancelled == [job.id]
        assert result.completed == []
        assert engine.backend.printed == []
        cancelled = await engine.store.get(job.id)
        assert cancelled.status is JobStatus.CANCELLED
        assert cancelled.error is None

    asyncio.run(scenario())


def test_cancel_during_failing_print_keeps_error_empty(engine_factory):
    async def scenario():
        engine = engine_factory(fail_for={"jam.pdf"}, print_delay=0.3)
        job = await engine.service.submit({"document_ref": "jam.pdf"})
        tick = asyncio.create_task(engine.coordinator.tick())
        await asyncio.sleep(0.1)
        await engine.service.cancel_job(job.id)
        result = await tick
        assert result.cancelled == [job.id]
        settled = await engine.store.get(job.id)
        assert settled.status is JobStatus.CANCELLED
        assert settled.error is None
        assert "paper jam" in settled.history[-1]["message"]

    asyncio.run(scenario())


def test_batches_are_capped_per_tick(engine_factory):
    async def scenario():
        engine = engine_factory(max_batch_size=5)
        jobs = [await engine.service.submit({"document_ref": f"memo-{index}.pdf"}) for index in range(7)]
        first = await engine.coordinator.tick()
        assert first.completed == [job.id for job in jobs[:5]]
        assert (await engine.store.get(jobs[5].id)).status is JobStatus.QUEUED
        second = await engine.coordinator.tick()
        assert second.completed == [job.id for job in jobs[5:]]

    asyncio.run(scenario())


def test_outcomes_are_counted_per_printer(engine_factory):
    async def scenario():
        engine = engine_factory(fail_for={"b.pdf"})
        for ref in ("a.pdf", "b.pdf"):
            await engine.service.submit({"document_ref": ref})
        await engine.service.submit({"document_ref": "c.pdf", "instructions": {"color_pages": [1]}})
        await engine.coordinator.tick()
        await engine.coordinator.tick()
        printers = engine.metrics.printer_snapshot()
        assert printers["mono_laser"]["batches"] == 1
        assert printers["mono_laser"]["jobs_dispatched"] == 2
        assert printers["mono_laser"]["jobs_completed"] == 1
        assert printers["mono_laser"]["jobs_failed"] == 1
        assert printers["color_laser"]["jobs_completed"] == 1
        assert engine.metrics.get("batches_executed") == 2
        assert engine.metrics.get("jobs_completed") == 2

    asyncio.run(scenario())
