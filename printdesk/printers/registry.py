"""Printer capability registry loaded from the registry CSV."""
from __future__ import annotations

import csv
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator

from printdesk.orchestrator.errors import ConfigurationError
from printdesk.orchestrator.jobs import PaperSize, PaperType

REGISTRY_COLUMNS = ("printer_id", "name", "color", "paper_sizes", "paper_types", "tags", "rank", "enabled")


class PrinterProfile(BaseModel):
    """Validated capabilities of a single printer."""

    printer_id: str = Field(min_length=1)
    name: str = ""
    color: bool = False
    paper_sizes: FrozenSet[PaperSize] = frozenset(PaperSize)
    paper_types: FrozenSet[PaperType] = frozenset({PaperType.PLAIN})
    tags: FrozenSet[str] = frozenset()
    rank: int = 100
    enabled: bool = True
    available: bool = True

    @field_validator("paper_sizes", "paper_types", "tags", mode="before")
    @classmethod
    def _split(cls, value: object) -> object:
        if isinstance(value, str):
            return frozenset(item.strip().lower() for item in value.split("|") if item.strip())
        return value

    def supports(self, paper_size: PaperSize, paper_type: PaperType) -> bool:
        return paper_size in self.paper_sizes and paper_type in self.paper_types


class PrinterRegistry:
    """Holds printer profiles in their fixed registry order plus live availability."""

    def __init__(self, profiles: Iterable[PrinterProfile]) -> None:
        self._profiles: Dict[str, PrinterProfile] = {}
        for profile in profiles:
            if profile.printer_id in self._profiles:
                raise ConfigurationError(f"Duplicate printer id: {profile.printer_id}")
            self._profiles[profile.printer_id] = profile

    @property
    def printer_ids(self) -> List[str]:
        return list(self._profiles)

    def get(self, printer_id: str) -> Optional[PrinterProfile]:
        return self._profiles.get(printer_id)

    def set_available(self, printer_id: str, available: bool) -> None:
        profile = self._profiles[printer_id]
        if profile.available != available:
            self._profiles[printer_id] = profile.model_copy(update={"available": available})

    def snapshot(self) -> List[PrinterProfile]:
        """Return the enabled profiles in registry order."""
        return [profile for profile in self._profiles.values() if profile.enabled]

    def __len__(self) -> int:
        return len(self._profiles)


def _coerce_bool(value: str | bool | None, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None or str(value).strip() == "":
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "y"}


def _coerce_int(value: str | int | None, default: int = 100) -> int:
    if value in (None, ""):
        return default
    return int(value)


def _prepare_row(row: dict[str, str]) -> dict[str, object]:
    mapped: dict[str, object] = {}
    for key, value in row.items():
        if key is None:
            continue
        mapped[key.strip()] = value.strip() if isinstance(value, str) else value
    mapped["color"] = _coerce_bool(mapped.get("color"), default=False)
    mapped["enabled"] = _coerce_bool(mapped.get("enabled"), default=True)
    mapped["rank"] = _coerce_int(mapped.get("rank"))
    for key in ("paper_sizes", "paper_types", "tags"):
        if mapped.get(key) in ("", None):
            mapped.pop(key, None)
    if not mapped.get("name"):
        mapped["name"] = mapped.get("printer_id", "")
    return mapped


def load_printers(csv_path: Path) -> List[PrinterProfile]:
    """Load enabled printers from the registry CSV, validating each row."""
    profiles: List[PrinterProfile] = []
    with csv_path.open("r", encoding="utf-8") as handle:
        reader = csv.DictReader(handle)
        for raw in reader:
            if not raw or not raw.get("printer_id"):
                continue
            prepared = _prepare_row(raw)
            try:
                profile = PrinterProfile(**prepared)
            except (ValidationError, ValueError) as exc:
                raise ConfigurationError(f"Invalid printer row {prepared.get('printer_id')}: {exc}") from exc
            if profile.enabled:
                profiles.append(profile)
    return profiles


def validate_printers(csv_path: Path) -> List[Tuple[str, bool, str]]:
    """Validate all rows, returning results per printer without raising."""
    results: List[Tuple[str, bool, str]] = []
    seen: set[str] = set()
    with csv_path.open("r", encoding="utf-8") as handle:
        reader = csv.DictReader(handle)
        for raw in reader:
            if not raw or not raw.get("printer_id"):
                continue
            prepared = _prepare_row(raw)
            printer_id = str(prepared.get("printer_id"))
            try:
                profile = PrinterProfile(**prepared)
            except (ValidationError, ValueError) as exc:
                results.append((printer_id, False, str(exc)))
                continue
            if printer_id in seen:
                results.append((printer_id, False, "duplicate printer_id"))
                continue
            seen.add(printer_id)
            results.append((printer_id, True, "ok" if profile.enabled else "disabled"))
    return results


def load_registry(csv_path: Path) -> PrinterRegistry:
    if not csv_path.exists():
        raise ConfigurationError(f"Printer registry not found: {csv_path}")
    return PrinterRegistry(load_printers(csv_path))


DEMO_PRINTERS = [
    {
        "printer_id": "office_color",
        "name": "Office Color Laser",
        "color": "true",
        "paper_sizes": "a4|letter|legal",
        "paper_types": "plain|glossy|photo",
        "tags": "color",
        "rank": "10",
        "enabled": "true",
    },
    {
        "printer_id": "office_mono",
        "name": "Office Mono Laser",
        "color": "false",
        "paper_sizes": "a4|a3|letter|legal",
        "paper_types": "plain",
        "tags": "speed",
        "rank": "10",
        "enabled": "true",
    },
    {
        "printer_id": "studio_photo",
        "name": "Studio Photo Inkjet",
        "color": "true",
        "paper_sizes": "a4|a3",
        "paper_types": "glossy|photo",
        "tags": "photo",
        "rank": "20",
        "enabled": "true",
    },
]


def seed_printers(path: Path) -> int:
    """Append demo printers whose ids are not yet in the registry CSV."""
    path.parent.mkdir(parents=True, exist_ok=True)
    exists = path.exists() and path.stat().st_size > 0
    present: set[str] = set()
    if exists:
        with path.open("r", encoding="utf-8") as handle:
            present = {row.get("printer_id", "") for row in csv.DictReader(handle)}
    written = 0
    with path.open("a", newline="", encoding="utf-8") as handle:
        writer = csv.DictWriter(handle, fieldnames=list(REGISTRY_COLUMNS))
        if not exists:
            writer.writeheader()
        for row in DEMO_PRINTERS:
            if row["printer_id"] in present:
                continue
            writer.writerow(row)
            written += 1
    return written
