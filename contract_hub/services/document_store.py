"""
Document Store Adapter

Stores an uploaded contract document under a per-contract key and returns a
reference (path + URL) that is written to the contract row.

Object keys look like:

    {contract_id}/{timestamp_ms}_{sanitized_filename}

where every run of characters outside [A-Za-z0-9_.-] in the filename is
replaced by a single underscore. Existing objects are never overwritten.

Validation (content type, size) happens before any I/O, so a rejected upload
leaves nothing behind.

Usage Example:
    from contract_hub.services.document_store import DocumentUpload, LocalDocumentStore

    store = LocalDocumentStore.from_settings()
    stored = await store.store(contract_id, DocumentUpload("kontrak.pdf", "application/pdf", data))
    print(stored.url)
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional
import asyncio
import logging
import re
import time

from contract_hub.config import get_settings
from contract_hub.errors import StorageError

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


@dataclass(frozen=True)
class DocumentUpload:
    """A document as received from the caller."""
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class StoredDocument:
    """Reference to a document that was written to the store."""
    path: str
    url: str
    content_type: str
    size: int


def sanitize_filename(filename: str) -> str:
    """Replace runs of unsafe characters with '_' (an empty result becomes 'document')."""
    # Only the last path component is kept; clients sometimes send full paths
    name = filename.replace("\\", "/").rsplit("/", 1)[-1].strip()
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", name)
    return cleaned or "document"


def build_object_key(contract_id: str, filename: str, timestamp_ms: Optional[int] = None) -> str:
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"{contract_id}/{timestamp_ms}_{sanitize_filename(filename)}"


class DocumentStore:
    """
    Base class for document store backends.

    Subclasses implement _write(); validation and key construction are shared.

    Args:
        allowed_content_types: Accepted MIME types
        max_upload_bytes: Largest accepted payload
        timeout_seconds: Upper bound for a single write
    """

    backend_name = "base"

    def __init__(
        self,
        allowed_content_types: Iterable[str],
        max_upload_bytes: int,
        timeout_seconds: float,
    ):
        self.allowed_content_types = frozenset(ct.lower() for ct in allowed_content_types)
        self.max_upload_bytes = max_upload_bytes
        self.timeout_seconds = timeout_seconds

    def validate(self, upload: DocumentUpload) -> None:
        """
        Reject uploads the store will not accept.

        Raises:
            StorageError: reason "content_type", "empty" or "too_large"
        """
        content_type = (upload.content_type or "").split(";", 1)[0].strip().lower()
        if content_type not in self.allowed_content_types:
            raise StorageError(
                f"Unsupported document type '{upload.content_type}'",
                reason="content_type",
            )
        if upload.size == 0:
            raise StorageError("Document is empty", reason="empty")
        if upload.size > self.max_upload_bytes:
            raise StorageError(
                f"Document is {upload.size} bytes, limit is {self.max_upload_bytes}",
                reason="too_large",
            )

    async def store(self, contract_id: str, upload: DocumentUpload) -> StoredDocument:
        """
        Validate and write a document for a contract.

        Returns:
            StoredDocument with the object key as path and its public URL

        Raises:
            StorageError: On validation failure, existing object, timeout or I/O failure
        """
        self.validate(upload)
        key = build_object_key(contract_id, upload.filename)

        try:
            await asyncio.wait_for(self._write(key, upload), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.error(f"Timed out writing {key} after {self.timeout_seconds}s")
            raise StorageError(f"Timed out writing document {key}", reason="timeout") from e

        logger.info(f"Stored document {key} ({upload.size} bytes) in {self.backend_name} store")
        return StoredDocument(
            path=key,
            url=self.url_for(key),
            content_type=upload.content_type,
            size=upload.size,
        )

    async def _write(self, key: str, upload: DocumentUpload) -> None:
        raise NotImplementedError

    def url_for(self, key: str) -> str:
        raise NotImplementedError


class LocalDocumentStore(DocumentStore):
    """
    Filesystem backend: objects live under {root}/{bucket}/{key}.

    URLs are {public_base_url}/{bucket}/{key}.
    """

    backend_name = "local"

    def __init__(
        self,
        root: str,
        bucket: str,
        public_base_url: str,
        allowed_content_types: Iterable[str],
        max_upload_bytes: int,
        timeout_seconds: float,
    ):
        super().__init__(allowed_content_types, max_upload_bytes, timeout_seconds)
        self.root = Path(root)
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")

    @classmethod
    def from_settings(cls) -> "LocalDocumentStore":
        settings = get_settings()
        return cls(
            root=settings.storage_root,
            bucket=settings.storage_bucket,
            public_base_url=settings.storage_public_base_url,
            allowed_content_types=settings.allowed_content_types,
            max_upload_bytes=settings.max_upload_bytes,
            timeout_seconds=settings.storage_timeout_seconds,
        )

    def path_for(self, key: str) -> Path:
        return self.root / self.bucket / key

    def url_for(self, key: str) -> str:
        return f"{self.public_base_url}/{self.bucket}/{key}"

    async def _write(self, key: str, upload: DocumentUpload) -> None:
        await asyncio.to_thread(self._write_sync, self.path_for(key), upload.data)

    @staticmethod
    def _write_sync(path: Path, data: bytes) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # "xb" fails if the object exists: uploads never replace a document
            with open(path, "xb") as fh:
                fh.write(data)
        except FileExistsError as e:
            raise StorageError(f"Document {path.name} already exists", reason="exists") from e
        except OSError as e:
            raise StorageError(f"Failed to write document: {e}", reason="transport") from e
