import asyncio

import httpx
import pytest

from printdesk.documents.resolver import StorageDocumentResolver
from printdesk.orchestrator.errors import DocumentUnavailableError


def test_resolves_stored_ids_and_ignores_sidecars(tmp_path):
    (tmp_path / "abc123.json").write_text("{}", encoding="utf-8")
    (tmp_path / "abc123.pdf").write_bytes(b"%PDF-1.7")
    resolver = StorageDocumentResolver(tmp_path)
    document = asyncio.run(resolver.resolve("abc123"))
    assert document.name == "abc123.pdf"
    assert document.size == 8


def test_missing_and_invalid_ids(tmp_path):
    resolver = StorageDocumentResolver(tmp_path)
    with pytest.raises(DocumentUnavailableError):
        asyncio.run(resolver.resolve("nothing"))
    with pytest.raises(DocumentUnavailableError):
        asyncio.run(resolver.resolve("../etc/passwd"))


def test_file_reference(tmp_path):
    target = tmp_path / "flyer.png"
    target.write_bytes(b"png")
    document = asyncio.run(StorageDocumentResolver(tmp_path / "store").resolve(f"file://{target}"))
    assert document.path == target


def test_downloads_remote_documents(tmp_path):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("missing.pdf"):
            return httpx.Response(404)
        return httpx.Response(200, content=b"remote-bytes")

    resolver = StorageDocumentResolver(tmp_path, transport=httpx.MockTransport(handler))
    document = asyncio.run(resolver.resolve("https://files.example.com/report.pdf"))
    assert document.path.read_bytes() == b"remote-bytes"
    assert document.name.startswith("remote-") and document.name.endswith(".pdf")
    with pytest.raises(DocumentUnavailableError):
        asyncio.run(resolver.resolve("https://files.example.com/missing.pdf"))
