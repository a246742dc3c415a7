import json

import pytest

from printdesk.observability.log import configure_logging
from printdesk.observability.metrics import MetricsRegistry, record_duration


def test_metrics_export(tmp_path):
    metrics = MetricsRegistry()
    metrics.incr("jobs_completed", 2)
    with record_duration(metrics, "tick_duration_ms"):
        pass
    path = metrics.export(path=tmp_path / "metrics" / "run_1.json", run_id="1")
    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["run_id"] == "1"
    assert payload["counters"]["jobs_completed"] == 2
    assert metrics.get("unknown") == 0


def test_per_printer_counters_are_exported(tmp_path):
    metrics = MetricsRegistry()
    metrics.record_batch("mono_laser", 3)
    metrics.record_outcome("mono_laser", "completed")
    metrics.record_outcome("mono_laser", "failed")
    metrics.record_outcome("color_laser", "cancelled")
    assert metrics.get("batches_executed") == 1
    assert metrics.get("jobs_cancelled") == 1
    payload = json.loads(metrics.export(path=tmp_path / "run_2.json", run_id="2").read_text(encoding="utf-8"))
    assert payload["printers"]["mono_laser"] == {
        "batches": 1,
        "jobs_dispatched": 3,
        "jobs_completed": 1,
        "jobs_failed": 1,
        "jobs_cancelled": 0,
    }
    assert payload["printers"]["color_laser"]["jobs_cancelled"] == 1
    with pytest.raises(ValueError):
        metrics.record_outcome("mono_laser", "lost")


def test_configure_logging_from_yaml(tmp_path):
    config = tmp_path / "logging.yaml"
    config.write_text("version: 1\nroot:\n  level: WARNING\n", encoding="utf-8")
    configure_logging(config)
    configure_logging(tmp_path / "missing.yaml")
