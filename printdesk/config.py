"""Typed settings read from ``config/settings.toml``."""
from __future__ import annotations

import tomllib
from datetime import timedelta
from pathlib import Path

from croniter import croniter
from pydantic import BaseModel, Field, ValidationError, field_validator

from printdesk.orchestrator.errors import ConfigurationError


class AppSettings(BaseModel):
    data_root: Path = Path("data")
    documents_dir: Path = Path("storage/documents")
    metrics_dir: Path = Path("data/metrics")


class QueueSettings(BaseModel):
    store_path: Path = Path("data/queue/jobs.jsonl")
    max_retries: int = Field(default=3, ge=0)
    max_batch_size: int = Field(default=5, ge=1)
    retention_days: float = Field(default=7, gt=0)
    tick_interval_seconds: float = Field(default=5.0, gt=0)
    cleanup_cron: str = "0 3 * * *"
    document_timeout_seconds: float = Field(default=30.0, gt=0)
    print_timeout_seconds: float = Field(default=300.0, gt=0)
    status_timeout_seconds: float = Field(default=5.0, gt=0)

    @field_validator("cleanup_cron")
    @classmethod
    def _valid_cron(cls, value: str) -> str:
        if not croniter.is_valid(value):
            raise ValueError(f"invalid cron expression: {value!r}")
        return value

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self.retention_days)


class PrinterSettings(BaseModel):
    registry_path: Path = Path("printer_registry/printers.csv")
    prefer_for_color: str = "color"
    prefer_for_mono: str = "speed"


class EventSettings(BaseModel):
    subscriber_buffer: int = Field(default=256, gt=0)


class Settings(BaseModel):
    app: AppSettings = Field(default_factory=AppSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    printers: PrinterSettings = Field(default_factory=PrinterSettings)
    events: EventSettings = Field(default_factory=EventSettings)


def load_settings(path: Path) -> Settings:
    """Read the TOML configuration file; a missing file yields the defaults."""
    if not path.exists():
        return Settings()
    with path.open("rb") as handle:
        payload = tomllib.load(handle)
    try:
        return Settings.model_validate(payload)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid settings in {path}: {exc}") from exc
