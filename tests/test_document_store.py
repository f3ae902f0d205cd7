import asyncio
import re

import pytest

from contract_hub.errors import StorageError
from contract_hub.services import document_store as document_store_module
from contract_hub.services.document_store import (
    DocumentUpload,
    LocalDocumentStore,
    build_object_key,
    sanitize_filename,
)

from tests.conftest import DOCUMENT_TYPES, PUBLIC_BASE_URL


def test_sanitize_filename_replaces_runs_of_unsafe_characters():
    assert sanitize_filename("Kontrak Pengadaan (final).pdf") == "Kontrak_Pengadaan_final_.pdf"
    assert sanitize_filename("C:\\Users\\me\\kontrak 2025.pdf") == "kontrak_2025.pdf"
    assert sanitize_filename("???") == "_"
    assert sanitize_filename("") == "document"


def test_object_key_layout():
    assert build_object_key("c-1", "a b.pdf", timestamp_ms=1700000000000) == "c-1/1700000000000_a_b.pdf"


async def test_store_writes_document_and_returns_reference(document_store, pdf_upload, tmp_path):
    stored = await document_store.store("contract-1", pdf_upload)

    assert re.fullmatch(r"contract-1/\d+_Kontrak_Pengadaan_final_\.pdf", stored.path)
    assert stored.url == f"{PUBLIC_BASE_URL}/pdf_storage/{stored.path}"
    assert stored.size == len(pdf_upload.data)
    assert stored.content_type == "application/pdf"
    assert (tmp_path / "storage" / "pdf_storage" / stored.path).read_bytes() == pdf_upload.data


async def test_rejects_unsupported_type_before_any_io(document_store, tmp_path):
    upload = DocumentUpload("malware.exe", "application/x-msdownload", b"MZ...")

    with pytest.raises(StorageError) as excinfo:
        await document_store.store("contract-1", upload)

    assert excinfo.value.reason == "content_type"
    assert not (tmp_path / "storage" / "pdf_storage").exists()


async def test_rejects_oversized_payload_before_any_io(tmp_path):
    store = LocalDocumentStore(
        root=str(tmp_path / "storage"),
        bucket="pdf_storage",
        public_base_url=PUBLIC_BASE_URL,
        allowed_content_types=DOCUMENT_TYPES,
        max_upload_bytes=10,
        timeout_seconds=5,
    )
    upload = DocumentUpload("big.pdf", "application/pdf", b"x" * 11)

    with pytest.raises(StorageError) as excinfo:
        await store.store("contract-1", upload)

    assert excinfo.value.reason == "too_large"
    assert not (tmp_path / "storage").exists()


async def test_content_type_parameters_are_ignored(document_store):
    upload = DocumentUpload("notes.txt", "text/plain; charset=utf-8", b"isi kontrak")
    stored = await document_store.store("contract-1", upload)
    assert stored.path.endswith("_notes.txt")


async def test_never_overwrites_existing_object(document_store, pdf_upload, monkeypatch, tmp_path):
    monkeypatch.setattr(document_store_module, "build_object_key", lambda contract_id, filename: f"{contract_id}/1_fixed.pdf")

    await document_store.store("contract-1", pdf_upload)
    second = DocumentUpload("fixed.pdf", "application/pdf", b"%PDF-1.4 replacement")
    with pytest.raises(StorageError) as excinfo:
        await document_store.store("contract-1", second)

    assert excinfo.value.reason == "exists"
    assert (tmp_path / "storage" / "pdf_storage" / "contract-1" / "1_fixed.pdf").read_bytes() == pdf_upload.data


async def test_slow_write_times_out(tmp_path, pdf_upload):
    class SlowStore(LocalDocumentStore):
        async def _write(self, key, upload):
            await asyncio.sleep(1)

    store = SlowStore(
        root=str(tmp_path / "storage"),
        bucket="pdf_storage",
        public_base_url=PUBLIC_BASE_URL,
        allowed_content_types=DOCUMENT_TYPES,
        max_upload_bytes=1024,
        timeout_seconds=0.01,
    )

    with pytest.raises(StorageError) as excinfo:
        await store.store("contract-1", pdf_upload)
    assert excinfo.value.reason == "timeout"
