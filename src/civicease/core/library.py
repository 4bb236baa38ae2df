"""Persistent Library Store.

The library is the durable, newest-first collection of analyzed documents.
It is stored as a single serialized blob: every mutation rewrites the whole
collection, so write cost grows with library size and the storage quota caps
how many documents (images included) can be kept.

The store is pure data access with two guarantees callers rely on:
- ``list()`` never raises. Missing or corrupt storage reads as empty.
- Mutations never raise on storage failure. The failure is logged and
  reported through the ``False`` return; the caller's in-memory state may
  then be ahead of what is persisted.

Example:
    >>> store = LibraryStore(FileLibraryStorage(Path("~/.civicease/library.json")))
    >>> store.save(doc)
    True
    >>> [d.id for d in store.list()]
    ['3f2c...']
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from civicease.core.models import ChatMessage, StoredDocument

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class StorageError(Exception):
    """Reading or writing the library blob failed.

    Attributes:
        quota_exceeded: True when the write was refused for size.
    """

    def __init__(self, message: str, quota_exceeded: bool = False) -> None:
        super().__init__(message)
        self.quota_exceeded = quota_exceeded


# =============================================================================
# Storage Backends
# =============================================================================


class LibraryStorage(Protocol):
    """A single-blob storage medium for the serialized library."""

    def read(self) -> bytes | None:
        """Return the stored blob, or None if nothing has been written."""
        ...

    def write(self, data: bytes) -> None:
        """Replace the stored blob. Raises StorageError on failure."""
        ...


def _check_quota(data: bytes, quota_bytes: int | None) -> None:
    if quota_bytes is not None and len(data) > quota_bytes:
        raise StorageError(
            f"Library size {len(data)} bytes exceeds quota of {quota_bytes} bytes",
            quota_exceeded=True,
        )


class FileLibraryStorage:
    """Library blob kept in one JSON file.

    Writes go to a temp file in the same directory and are renamed over the
    target, so a crash mid-write leaves the previous library intact.

    Attributes:
        path: The library file.
        quota_bytes: Largest blob accepted, or None for no limit.
    """

    def __init__(self, path: Path, quota_bytes: int | None = None) -> None:
        self.path = Path(path).expanduser()
        self.quota_bytes = quota_bytes

    def read(self) -> bytes | None:
        if not self.path.exists():
            return None
        try:
            return self.path.read_bytes()
        except OSError as e:
            raise StorageError(f"Cannot read library: {type(e).__name__}") from e

    def write(self, data: bytes) -> None:
        _check_quota(data, self.quota_bytes)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(
                dir=self.path.parent,
                suffix=".tmp",
                prefix=".library_",
            )
        except OSError as e:
            raise StorageError(f"Cannot write library: {type(e).__name__}") from e

        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            Path(temp_path).replace(self.path)
        except OSError as e:
            Path(temp_path).unlink(missing_ok=True)
            raise StorageError(f"Cannot write library: {type(e).__name__}") from e


class MemoryLibraryStorage:
    """In-process storage, for tests and ephemeral sessions.

    Attributes:
        data: Current blob, or None.
        quota_bytes: Largest blob accepted, or None for no limit.
        fail_writes: When True every write raises StorageError.
        write_count: Number of successful writes.
    """

    def __init__(self, data: bytes | None = None, quota_bytes: int | None = None) -> None:
        self.data = data
        self.quota_bytes = quota_bytes
        self.fail_writes = False
        self.write_count = 0

    def read(self) -> bytes | None:
        return self.data

    def write(self, data: bytes) -> None:
        if self.fail_writes:
            raise StorageError("Storage unavailable")
        _check_quota(data, self.quota_bytes)
        self.data = data
        self.write_count += 1


# =============================================================================
# Library Store
# =============================================================================


class LibraryStore:
    """Keyed, newest-first collection of StoredDocument records."""

    def __init__(self, storage: LibraryStorage) -> None:
        self._storage = storage
        self._lock = threading.RLock()

    @property
    def storage(self) -> LibraryStorage:
        return self._storage

    def list(self) -> list[StoredDocument]:
        """Load every stored document, newest first.

        Never raises. Unreadable or corrupt storage yields an empty list;
        individual records that fail validation are skipped.
        """
        try:
            blob = self._storage.read()
        except StorageError as e:
            logger.warning(f"Failed to load library: {e}")
            return []

        if not blob:
            return []

        try:
            records = json.loads(blob.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Library corrupted, treating as empty: {type(e).__name__}")
            return []

        if not isinstance(records, list):
            logger.warning("Library corrupted, treating as empty: not a list")
            return []

        documents: list[StoredDocument] = []
        seen: set[str] = set()
        for index, record in enumerate(records):
            try:
                doc = StoredDocument.model_validate(record)
            except ValidationError as e:
                logger.warning(f"Skipping invalid library record #{index}: {e.error_count()} errors")
                continue
            if doc.id in seen:
                logger.warning(f"Skipping duplicate library record {doc.id}")
                continue
            seen.add(doc.id)
            documents.append(doc)
        return documents

    def get(self, doc_id: str) -> StoredDocument | None:
        for doc in self.list():
            if doc.id == doc_id:
                return doc
        return None

    def save(self, doc: StoredDocument) -> bool:
        """Insert or replace ``doc`` by id.

        An existing id is replaced in place; a new id goes to the front.

        Returns:
            True if the library was persisted, False if storage failed.
        """
        with self._lock:
            documents = self.list()
            for index, existing in enumerate(documents):
                if existing.id == doc.id:
                    documents[index] = doc
                    break
            else:
                documents.insert(0, doc)
            return self._write(documents)

    def delete(self, doc_id: str) -> bool:
        """Remove the document with ``doc_id``.

        Returns:
            True if a document was removed and the library persisted.
        """
        with self._lock:
            documents = self.list()
            remaining = [d for d in documents if d.id != doc_id]
            if len(remaining) == len(documents):
                logger.debug(f"Delete ignored, no document {doc_id}")
                return False
            return self._write(remaining)

    def update_chat_history(self, doc_id: str, history: list[ChatMessage]) -> bool:
        """Replace the chat history of one document.

        The library is reloaded immediately before writing and only the
        ``chat_history`` field of the matching record is touched.

        Returns:
            True if the document exists and the library was persisted.
        """
        with self._lock:
            documents = self.list()
            for index, existing in enumerate(documents):
                if existing.id == doc_id:
                    documents[index] = existing.with_chat_history(history)
                    return self._write(documents)
            logger.debug(f"Chat update ignored, no document {doc_id}")
            return False

    def _write(self, documents: list[StoredDocument]) -> bool:
        payload = json.dumps([doc.to_record() for doc in documents], ensure_ascii=False)
        try:
            self._storage.write(payload.encode("utf-8"))
        except StorageError as e:
            if e.quota_exceeded:
                logger.error(f"Failed to save library, storage is full: {e}")
            else:
                logger.error(f"Failed to save library: {e}")
            return False
        logger.debug(f"Library saved: {len(documents)} documents")
        return True
