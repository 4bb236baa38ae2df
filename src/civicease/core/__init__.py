"""Core data layer for CivicEase.

Exports:
    - AnalysisResult, StoredDocument, ChatMessage: persisted records
    - UrgencyLevel, ChatRole: enums
    - LibraryStore and its storage backends
    - Image helpers and preview handles

The session controller lives in ``civicease.core.session``; it depends on
the AI package and is imported from there directly.
"""

from civicease.core.images import (
    PreviewFactory,
    PreviewHandle,
    PreviewReleasedError,
    UnsupportedFileError,
    detect_mime_type,
    parse_data_url,
    to_data_url,
)
from civicease.core.library import (
    FileLibraryStorage,
    LibraryStorage,
    LibraryStore,
    MemoryLibraryStorage,
    StorageError,
)
from civicease.core.models import (
    AnalysisResult,
    ChatHistory,
    ChatMessage,
    ChatRole,
    StoredDocument,
    UrgencyLevel,
)

__all__ = [
    # Models
    "AnalysisResult",
    "ChatHistory",
    "ChatMessage",
    "ChatRole",
    "StoredDocument",
    "UrgencyLevel",
    # Library
    "FileLibraryStorage",
    "LibraryStorage",
    "LibraryStore",
    "MemoryLibraryStorage",
    "StorageError",
    # Images
    "PreviewFactory",
    "PreviewHandle",
    "PreviewReleasedError",
    "UnsupportedFileError",
    "detect_mime_type",
    "parse_data_url",
    "to_data_url",
]
