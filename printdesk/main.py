"""Command-line entrypoints for the print desk queue engine."""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import structlog
from dotenv import load_dotenv

try:
    import uvloop
except ImportError:  # pragma: no cover - uvloop optional on some platforms
    uvloop = None

from printdesk.admin.status import summarise_jobs
from printdesk.config import Settings, load_settings
from printdesk.documents.resolver import DocumentResolver, StorageDocumentResolver
from printdesk.events.publisher import EventPublisher, JobAdded, QueueSnapshotChanged, Subscription
from printdesk.observability.log import configure_logging
from printdesk.observability.metrics import MetricsRegistry
from printdesk.orchestrator.coordinator import ExecutionCoordinator
from printdesk.orchestrator.planner import PreferencePolicy, planned_batch_keys
from printdesk.orchestrator.schedule_loop import run_schedule_loop
from printdesk.orchestrator.service import PrintQueueService
from printdesk.orchestrator.store import JobStore
from printdesk.printers.backend import DryRunPrinterBackend, LpPrinterBackend, PrinterBackend
from printdesk.printers.registry import PrinterProfile, PrinterRegistry, load_registry, seed_printers, validate_printers
from printdesk.storage.layout import DataLayout

LOGGER = structlog.get_logger(__name__)

DEFAULT_SETTINGS = Path("config/settings.toml")
DEFAULT_LOGGING = Path("config/logging.yaml")


@dataclass
class Runtime:
    """Explicitly wired engine components for one process."""

    layout: DataLayout
    store: JobStore
    registry: PrinterRegistry
    publisher: EventPublisher
    coordinator: ExecutionCoordinator
    service: PrintQueueService
    metrics: MetricsRegistry


def _preference_policy(settings: Settings) -> PreferencePolicy:
    return PreferencePolicy(
        prefer_for_color=settings.printers.prefer_for_color,
        prefer_for_mono=settings.printers.prefer_for_mono,
    )


def build_runtime(
    settings: Settings,
    *,
    backend: Optional[PrinterBackend] = None,
    resolver: Optional[DocumentResolver] = None,
    dry_run: bool = False,
) -> Runtime:
    """Construct the store, registry, publisher, coordinator and service."""
    layout = DataLayout.from_settings(settings)
    metrics = MetricsRegistry()
    store = JobStore(path=layout.queue_store)
    registry = load_registry(settings.printers.registry_path)
    publisher = EventPublisher(buffer_size=settings.events.subscriber_buffer, metrics=metrics)
    if backend is None:
        backend = DryRunPrinterBackend() if dry_run else LpPrinterBackend()
    if resolver is None:
        resolver = StorageDocumentResolver(layout.documents, timeout=settings.queue.document_timeout_seconds)
    coordinator = ExecutionCoordinator(
        store=store,
        registry=registry,
        backend=backend,
        resolver=resolver,
        publisher=publisher,
        policy=_preference_policy(settings),
        metrics=metrics,
        document_timeout=settings.queue.document_timeout_seconds,
        print_timeout=settings.queue.print_timeout_seconds,
        status_timeout=settings.queue.status_timeout_seconds,
        max_batch_size=settings.queue.max_batch_size,
    )
    service = PrintQueueService(
        store=store,
        publisher=publisher,
        coordinator=coordinator,
        metrics=metrics,
        max_retries=settings.queue.max_retries,
        retention=settings.queue.retention,
    )
    return Runtime(
        layout=layout,
        store=store,
        registry=registry,
        publisher=publisher,
        coordinator=coordinator,
        service=service,
        metrics=metrics,
    )


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="printdesk", description="Print job queue and batching engine")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the scheduling loop")
    serve.add_argument("--ticks", type=int, help="Number of ticks to execute before exiting")
    serve.add_argument("--interval", type=float, help="Seconds between ticks (overrides settings)")
    serve.add_argument("--dry-run", action="store_true", help="Log print requests instead of sending them to CUPS")

    sub.add_parser("status", help="Summarise the persisted queue")
    sub.add_parser("validate-printers", help="Validate the printer registry CSV")
    sub.add_parser("seed-printers", help="Populate the printer registry with demo rows")

    return parser


async def _log_events(subscription: Subscription) -> None:
    async for event in subscription:
        if isinstance(event, QueueSnapshotChanged):
            LOGGER.info("queue_snapshot", **event.stats)
        elif isinstance(event, JobAdded):
            LOGGER.info("job_added", job_id=event.job["id"], priority=event.job["priority"])
        else:
            LOGGER.info("job_status_changed", **event.to_dict())


async def run_service(args: argparse.Namespace, settings: Settings) -> Runtime:
    """Execute the serve command until interrupted or ``--ticks`` is reached."""
    runtime = build_runtime(settings, dry_run=getattr(args, "dry_run", False))
    await runtime.service.recover_interrupted()
    subscription = runtime.service.subscribe()
    listener = asyncio.create_task(_log_events(subscription))
    stop = asyncio.Event()

    def _request_stop() -> None:
        LOGGER.info("shutdown_requested")
        stop.set()
        runtime.coordinator.wake()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, _request_stop)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows loops
            LOGGER.debug("signal_handler_unavailable", signal=signum.name)
    run_id = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    try:
        await run_schedule_loop(
            runtime.coordinator,
            service=runtime.service,
            interval_seconds=getattr(args, "interval", None) or settings.queue.tick_interval_seconds,
            cleanup_cron=settings.queue.cleanup_cron,
            ticks=getattr(args, "ticks", None),
            stop=stop,
        )
    finally:
        subscription.close()
        await asyncio.gather(listener, return_exceptions=True)
        runtime.metrics.export(path=runtime.layout.metrics_file(run_id), run_id=run_id)
    return runtime


async def _queue_status(store: JobStore, printers: List[PrinterProfile], policy: PreferencePolicy) -> dict:
    jobs = await store.list()
    keys = planned_batch_keys(jobs, printers, policy)
    return {
        "stats": summarise_jobs(jobs),
        "jobs": [{**job.to_dict(), "batch_key": keys.get(job.id)} for job in jobs],
    }


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    settings = load_settings(Path(os.getenv("PRINTDESK_SETTINGS", str(DEFAULT_SETTINGS))))
    configure_logging(Path(os.getenv("PRINTDESK_LOGGING", str(DEFAULT_LOGGING))))

    if args.command == "seed-printers":
        written = seed_printers(settings.printers.registry_path)
        print(json.dumps({"path": str(settings.printers.registry_path), "rows_written": written}))
        return

    if args.command == "validate-printers":
        results = validate_printers(settings.printers.registry_path)
        report = []
        success = True
        for printer_id, ok, detail in results:
            status = "OK"
            if detail == "disabled":
                status = "DISABLED"
            elif not ok:
                status = "FAIL"
                success = False
            report.append({
                "printer_id": printer_id,
                "status": status,
                "detail": detail if status != "OK" else "",
            })
        print(json.dumps(report, indent=2))
        if not success:
            raise SystemExit(1)
        return

    if args.command == "status":
        store = JobStore(path=settings.queue.store_path)
        registry_path = settings.printers.registry_path
        registry = load_registry(registry_path) if registry_path.exists() else PrinterRegistry([])
        policy = _preference_policy(settings)
        print(json.dumps(asyncio.run(_queue_status(store, registry.snapshot(), policy)), indent=2))
        return

    if args.command == "serve":
        if uvloop is not None:
            uvloop.install()
        asyncio.run(run_service(args, settings))


if __name__ == "__main__":
    main()
