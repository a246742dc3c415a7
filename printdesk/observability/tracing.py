"""Tracing helpers for batch and job execution."""
from __future__ import annotations

import contextlib
import time
from typing import Any, Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars


def _logger() -> Any:
    return structlog.get_logger("printdesk.trace")


def set_context(*, job_id: str, printer_id: Optional[str] = None, batch_key: Optional[str] = None) -> None:
    bind_contextvars(job_id=job_id, printer_id=printer_id, batch_key=batch_key)
    _logger().debug("trace_context")


def clear_context() -> None:
    clear_contextvars()


@contextlib.contextmanager
def span(*, name: str, **fields: Any) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        _logger().info("trace_span", span=name, elapsed_ms=elapsed_ms, **fields)


def log_transition(*, job_id: str, status: str, progress: Optional[int] = None, error: Optional[str] = None) -> None:
    _logger().info("job_transition", job_id=job_id, status=status, progress=progress, error=error)
