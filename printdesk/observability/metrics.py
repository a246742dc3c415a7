"""Queue and printer counters for one serving process, exported as JSON per run."""
from __future__ import annotations

import contextlib
import json
import time
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterator

import structlog

LOGGER = structlog.get_logger(__name__)

QUEUE_COUNTERS = (
    "jobs_submitted",
    "jobs_completed",
    "jobs_failed",
    "jobs_cancelled",
    "jobs_retried",
    "jobs_unplaceable",
    "jobs_removed",
    "ticks",
    "ticks_skipped",
    "batches_executed",
    "events_published",
    "events_dropped",
    "tick_duration_ms",
)

JOB_OUTCOMES = ("completed", "failed", "cancelled")


class MetricsRegistry:
    """Queue-wide counters plus per-printer batch and outcome tallies."""

    def __init__(self) -> None:
        self._counters: Dict[str, int] = defaultdict(int)
        self._printers: Dict[str, Dict[str, int]] = {}
        for key in QUEUE_COUNTERS:
            self._counters[key] = 0

    def incr(self, name: str, value: int = 1) -> None:
        self._counters[name] += value

    def get(self, name: str) -> int:
        return self._counters.get(name, 0)

    def _printer(self, printer_id: str) -> Dict[str, int]:
        counters = self._printers.get(printer_id)
        if counters is None:
            counters = {"batches": 0, "jobs_dispatched": 0}
            counters.update({f"jobs_{outcome}": 0 for outcome in JOB_OUTCOMES})
            self._printers[printer_id] = counters
        return counters

    def record_batch(self, printer_id: str, size: int) -> None:
        """Count one executed batch of ``size`` jobs against its printer."""
        self.incr("batches_executed")
        counters = self._printer(printer_id)
        counters["batches"] += 1
        counters["jobs_dispatched"] += size

    def record_outcome(self, printer_id: str, outcome: str) -> None:
        """Count a terminal job outcome both queue-wide and for the printer."""
        if outcome not in JOB_OUTCOMES:
            raise ValueError(f"Unknown job outcome: {outcome}")
        self.incr(f"jobs_{outcome}")
        self._printer(printer_id)[f"jobs_{outcome}"] += 1

    def printer_snapshot(self) -> Dict[str, Dict[str, int]]:
        return {printer_id: dict(counters) for printer_id, counters in sorted(self._printers.items())}

    def snapshot(self) -> Dict[str, int]:
        """Return a shallow copy of the queue-wide counters."""
        return dict(self._counters)

    def export(self, *, path: Path, run_id: str) -> Path:
        """Write the run's counters to ``path`` as JSON."""
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "run_id": run_id,
            "counters": self.snapshot(),
            "printers": self.printer_snapshot(),
            "generated_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        LOGGER.info("metrics_exported", path=str(path), printers=len(self._printers))
        return path


@contextlib.contextmanager
def record_duration(registry: MetricsRegistry, metric_name: str) -> Iterator[None]:
    """Add the block's elapsed milliseconds to ``metric_name``."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        registry.incr(metric_name, elapsed_ms)
        LOGGER.debug("timer_stop", metric=metric_name, duration_ms=elapsed_ms)
