"""Structured logging initialisation utilities."""
from __future__ import annotations

import logging
import logging.config
from pathlib import Path
from typing import Any, Dict, List

import structlog
import yaml


def _processors() -> List[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ]


def configure_logging(config_path: Path) -> None:
    """Configure stdlib and structlog logging using the YAML definition."""
    if not config_path.exists():
        logging.basicConfig(level=logging.INFO)
        structlog.configure(processors=_processors())
        return

    with config_path.open("r", encoding="utf-8") as handle:
        config: Dict[str, Any] = yaml.safe_load(handle)
    logging.config.dictConfig(config)
    level = logging.getLogger().getEffectiveLevel()
    structlog.configure(
        processors=_processors(),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
