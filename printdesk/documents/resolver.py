"""Resolution of stored documents referenced by print jobs."""
from __future__ import annotations

import asyncio
import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import urlparse

import httpx
import structlog

from printdesk.orchestrator.errors import DocumentUnavailableError

LOGGER = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Document:
    """A document ready to hand to a printer backend."""

    ref: str
    path: Path
    name: str
    size: int


class DocumentResolver(ABC):
    """Turns an opaque document reference into a local file."""

    @abstractmethod
    async def resolve(self, document_ref: str) -> Document:
        """Return the document or raise ``DocumentUnavailableError``."""


class StorageDocumentResolver(DocumentResolver):
    """Looks documents up in the shared storage directory.

    Plain references are storage ids: the stored file is the one whose name
    starts with the id, ignoring ``.json`` metadata sidecars. ``file://``
    references point straight at a file and ``http(s)://`` references are
    downloaded into the storage directory first.
    """

    def __init__(
        self,
        root: Path,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._root = root
        self._timeout = timeout
        self._transport = transport
        self._root.mkdir(parents=True, exist_ok=True)

    async def resolve(self, document_ref: str) -> Document:
        parsed = urlparse(document_ref)
        if parsed.scheme in ("http", "https"):
            return await self._download(document_ref)
        if parsed.scheme == "file":
            location = Path((parsed.netloc + parsed.path) or parsed.path)
            return await asyncio.to_thread(self._describe, document_ref, location)
        return await asyncio.to_thread(self._lookup, document_ref)

    def _lookup(self, document_id: str) -> Document:
        if not document_id or "/" in document_id or "\\" in document_id:
            raise DocumentUnavailableError(f"Invalid document id: {document_id!r}")
        matches = sorted(
            path
            for path in self._root.glob(f"{document_id}*")
            if path.is_file() and path.suffix != ".json"
        )
        if not matches:
            raise DocumentUnavailableError(f"Document not found: {document_id}")
        return self._describe(document_id, matches[0])

    def _describe(self, document_ref: str, path: Path) -> Document:
        try:
            size = path.stat().st_size
        except OSError as exc:
            raise DocumentUnavailableError(f"Document not readable: {document_ref} ({exc})") from exc
        if not path.is_file():
            raise DocumentUnavailableError(f"Document is not a file: {document_ref}")
        return Document(ref=document_ref, path=path, name=path.name, size=size)

    async def _download(self, url: str) -> Document:
        suffix = PurePosixPath(urlparse(url).path).suffix
        target = self._root / f"remote-{hashlib.sha256(url.encode()).hexdigest()[:16]}{suffix}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(url, follow_redirects=True)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise DocumentUnavailableError(f"Download failed for {url}: {exc}") from exc
        await asyncio.to_thread(target.write_bytes, response.content)
        LOGGER.info("document_downloaded", url=url, path=str(target), bytes=len(response.content))
        return Document(ref=url, path=target, name=target.name, size=len(response.content))
