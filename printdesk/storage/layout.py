"""Path helpers for the on-disk layout of a print desk installation."""
from __future__ import annotations

from pathlib import Path

from printdesk.config import Settings


class DataLayout:
    """Computes and creates the directories the service writes into."""

    def __init__(
        self,
        *,
        data_root: Path,
        documents: Path,
        metrics: Path,
        queue_store: Path,
    ) -> None:
        self.data_root = data_root
        self.documents = documents
        self.metrics = metrics
        self.queue_store = queue_store
        for path in (data_root, documents, metrics, queue_store.parent):
            path.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_settings(cls, settings: Settings) -> "DataLayout":
        return cls(
            data_root=settings.app.data_root,
            documents=settings.app.documents_dir,
            metrics=settings.app.metrics_dir,
            queue_store=settings.queue.store_path,
        )

    def metrics_file(self, run_id: str) -> Path:
        return self.metrics / f"run_{run_id}.json"
