import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import pytest

from printdesk.documents.resolver import Document, DocumentResolver
from printdesk.events.publisher import EventPublisher
from printdesk.observability.metrics import MetricsRegistry
from printdesk.orchestrator.coordinator import ExecutionCoordinator
from printdesk.orchestrator.errors import DocumentUnavailableError, PrinterUnavailableError
from printdesk.orchestrator.service import PrintQueueService
from printdesk.orchestrator.store import JobStore
from printdesk.printers.backend import PrinterBackend, PrinterStatus, PrintReceipt
from printdesk.printers.registry import PrinterProfile, PrinterRegistry


class RecordingBackend(PrinterBackend):
    """Backend double that records prints and fails on chosen documents."""

    def __init__(
        self,
        *,
        fail_for: Iterable[str] = (),
        ready: Optional[Dict[str, bool]] = None,
        delay: float = 0.0,
    ) -> None:
        self.fail_for = set(fail_for)
        self.ready = ready or {}
        self.delay = delay
        self.printed: List[Tuple[str, str]] = []

    async def print(self, document, instructions, printer):
        if self.delay:
            await asyncio.sleep(self.delay)
        if document.ref in self.fail_for:
            raise PrinterUnavailableError(f"paper jam on {printer.printer_id}")
        self.printed.append((document.ref, printer.printer_id))
        return PrintReceipt(printer_id=printer.printer_id, reference=f"req-{len(self.printed)}")

    async def status(self, printer_id):
        return PrinterStatus(printer_id=printer_id, ready=self.ready.get(printer_id, True))


class MemoryResolver(DocumentResolver):
    def __init__(self, *, missing: Iterable[str] = (), delay: float = 0.0) -> None:
        self.missing = set(missing)
        self.delay = delay

    async def resolve(self, document_ref):
        if self.delay:
            await asyncio.sleep(self.delay)
        if document_ref in self.missing:
            raise DocumentUnavailableError(f"Document not found: {document_ref}")
        return Document(ref=document_ref, path=Path("/srv/docs") / document_ref, name=document_ref, size=1)


def color_printer(**overrides) -> PrinterProfile:
    fields = {
        "printer_id": "color_laser",
        "name": "Color Laser",
        "color": True,
        "paper_sizes": "a4|letter",
        "paper_types": "plain|glossy|photo",
        "tags": "color",
        "rank": 10,
    }
    fields.update(overrides)
    return PrinterProfile(**fields)


def mono_printer(**overrides) -> PrinterProfile:
    fields = {
        "printer_id": "mono_laser",
        "name": "Mono Laser",
        "color": False,
        "paper_sizes": "a4|a3|letter",
        "paper_types": "plain",
        "tags": "speed",
        "rank": 10,
    }
    fields.update(overrides)
    return PrinterProfile(**fields)


@dataclass
class Engine:
    store: JobStore
    registry: PrinterRegistry
    backend: RecordingBackend
    resolver: MemoryResolver
    publisher: EventPublisher
    coordinator: ExecutionCoordinator
    service: PrintQueueService
    metrics: MetricsRegistry


@pytest.fixture()
def printers():
    return [color_printer(), mono_printer()]


@pytest.fixture()
def engine_factory(tmp_path, printers):
    """Build a fully wired engine; call it inside the running event loop."""

    def build(
        *,
        profiles: Optional[List[PrinterProfile]] = None,
        fail_for: Iterable[str] = (),
        ready: Optional[Dict[str, bool]] = None,
        print_delay: float = 0.0,
        missing: Iterable[str] = (),
        resolve_delay: float = 0.0,
        max_retries: int = 3,
        store_path: Optional[Path] = None,
        **coordinator_options,
    ) -> Engine:
        metrics = MetricsRegistry()
        store = JobStore(path=store_path or tmp_path / "queue" / "jobs.jsonl")
        registry = PrinterRegistry(profiles if profiles is not None else printers)
        backend = RecordingBackend(fail_for=fail_for, ready=ready, delay=print_delay)
        resolver = MemoryResolver(missing=missing, delay=resolve_delay)
        publisher = EventPublisher(metrics=metrics)
        coordinator = ExecutionCoordinator(
            store=store,
            registry=registry,
            backend=backend,
            resolver=resolver,
            publisher=publisher,
            metrics=metrics,
            **coordinator_options,
        )
        service = PrintQueueService(
            store=store,
            publisher=publisher,
            coordinator=coordinator,
            metrics=metrics,
            max_retries=max_retries,
        )
        return Engine(store, registry, backend, resolver, publisher, coordinator, service, metrics)

    return build
