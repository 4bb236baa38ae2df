"""Document Session Controller.

The controller is the state machine behind every front end. It owns the
single *active document* slot and moves between four states:

    IDLE ──select_file──▶ FILE_PENDING ──analyze──▶ ANALYZING
      ▲                        ▲                        │
      │                        └──────── failure ───────┤
      │                                                 ▼
      └───────────── clear ◀──────────────────────── VIEWING

``select_from_library`` jumps straight to VIEWING from any state. The
``browsing`` flag is orthogonal: it marks that the library list is on screen.

Analysis and chat run in worker threads. Every analysis gets a request token;
when ``clear`` or ``select_from_library`` supersedes a request, its result is
dropped on arrival instead of being saved or shown.

Example:
    >>> controller = DocumentSessionController(store, gateway)
    >>> controller.select_file(Path("notice.png"))
    True
    >>> doc = asyncio.run(controller.analyze())
    >>> controller.state
    <SessionState.VIEWING: 'viewing'>
    >>> asyncio.run(controller.send_message("What happens if I pay late?"))
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from civicease.ai.chat import ChatBusyError, ChatSession, ChatSessionManager
from civicease.ai.client import AIClientError, AnalysisError, AnalysisGateway, CredentialError
from civicease.core.images import (
    PreviewFactory,
    PreviewHandle,
    PreviewReleasedError,
    UnsupportedFileError,
    detect_mime_type,
    to_data_url,
)
from civicease.core.library import LibraryStore
from civicease.core.models import AnalysisResult, ChatMessage, StoredDocument
from civicease.utils.logging import log_context

logger = logging.getLogger(__name__)

__all__ = [
    "CREDENTIAL_ERROR_MESSAGE",
    "DocumentNotFoundError",
    "DocumentSessionController",
    "NoActiveDocumentError",
    "PendingUpload",
    "PreviewReleasedError",
    "SessionState",
    "UnsupportedFileError",
]


CREDENTIAL_ERROR_MESSAGE = "Invalid or missing API key. Please check your configuration."
DEFAULT_MAX_UPLOAD_BYTES = 20 * 1024 * 1024


class SessionState(str, Enum):
    IDLE = "idle"
    FILE_PENDING = "file_pending"
    ANALYZING = "analyzing"
    VIEWING = "viewing"


class DocumentNotFoundError(LookupError):
    """No library document has the requested id."""


class NoActiveDocumentError(RuntimeError):
    """A chat message was sent with no document open."""


@dataclass
class PendingUpload:
    """A selected file awaiting analysis.

    Attributes:
        file_name: Name shown to the user and stored with the document.
        image_bytes: Raw image bytes.
        mime_type: Detected image type.
        preview: Thumbnail handle, released when the upload is retired.
    """

    file_name: str
    image_bytes: bytes
    mime_type: str
    preview: PreviewHandle

    @property
    def data_url(self) -> str:
        return to_data_url(self.image_bytes, self.mime_type)


class DocumentSessionController:
    """Orchestrates upload, analysis, library and chat for one user session."""

    def __init__(
        self,
        store: LibraryStore,
        gateway: AnalysisGateway,
        chat_manager: ChatSessionManager | None = None,
        preview_factory: PreviewFactory | None = None,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._chat_manager = chat_manager or ChatSessionManager(gateway)
        self._previews = preview_factory or PreviewFactory()
        self._max_upload_bytes = max_upload_bytes

        self._state = SessionState.IDLE
        self._browsing = False
        self._active: StoredDocument | None = None
        self._chat_session: ChatSession | None = None
        self._result: AnalysisResult | None = None
        self._error: str | None = None
        self._pending: PendingUpload | None = None
        self._request_token = 0
        self._library = store.list()

    # -------------------------------------------------------------------------
    # Read-only view
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def browsing(self) -> bool:
        return self._browsing

    @property
    def active_doc_id(self) -> str | None:
        return self._active.id if self._active else None

    @property
    def active_document(self) -> StoredDocument | None:
        return self._active

    @property
    def result(self) -> AnalysisResult | None:
        return self._result

    @property
    def error(self) -> str | None:
        return self._error

    @property
    def pending(self) -> PendingUpload | None:
        return self._pending

    @property
    def chat_history(self) -> list[ChatMessage]:
        return list(self._active.chat_history) if self._active else []

    @property
    def library(self) -> list[StoredDocument]:
        return list(self._library)

    @property
    def previews(self) -> PreviewFactory:
        return self._previews

    # -------------------------------------------------------------------------
    # Upload and analysis
    # -------------------------------------------------------------------------

    def select_file(self, path: Path) -> bool:
        """Select an image file from disk. See ``select_file_bytes``."""
        path = Path(path)
        try:
            size = path.stat().st_size
            if size > self._max_upload_bytes:
                raise UnsupportedFileError(self._too_large_message(size))
            data = path.read_bytes()
        except OSError as e:
            raise UnsupportedFileError(f"Cannot read {path.name}: {type(e).__name__}") from e
        return self.select_file_bytes(path.name, data)

    def select_file_bytes(self, file_name: str, data: bytes) -> bool:
        """Stage an image for analysis.

        Returns:
            True if the file is now pending; False if ignored because an
            analysis is running.

        Raises:
            UnsupportedFileError: If the data is not an image or is too large.
                State is left unchanged.
        """
        if self._state is SessionState.ANALYZING:
            logger.info(f"Ignoring {file_name}, analysis in progress")
            return False

        if len(data) > self._max_upload_bytes:
            raise UnsupportedFileError(self._too_large_message(len(data)))
        mime_type = detect_mime_type(data)
        preview = self._previews.create(data)

        self._release_pending()
        self._deactivate()
        self._pending = PendingUpload(file_name, data, mime_type, preview)
        self._result = None
        self._error = None
        self._browsing = False
        self._state = SessionState.FILE_PENDING
        logger.debug(f"Selected {file_name} ({mime_type}, {len(data)} bytes)")
        return True

    async def analyze(self) -> StoredDocument | None:
        """Analyze the pending file.

        On success the new document is saved, activated and opened for chat.
        On failure the error is recorded and the file stays pending so the
        user can retry.

        Returns:
            The new document, or None on failure, when ignored, or when the
            request was superseded before it finished.
        """
        if self._state is not SessionState.FILE_PENDING or self._pending is None:
            logger.debug(f"Ignoring analyze in state {self._state.value}")
            return None

        self._request_token += 1
        token = self._request_token
        pending = self._pending
        self._state = SessionState.ANALYZING
        self._error = None

        try:
            with log_context(f"Analyzing {pending.file_name}", logger=logger):
                analysis = await asyncio.to_thread(
                    self._gateway.analyze, pending.image_bytes, pending.mime_type
                )
        except CredentialError:
            self._fail_analysis(token, CREDENTIAL_ERROR_MESSAGE)
            return None
        except AIClientError as e:
            self._fail_analysis(token, e.message)
            return None
        except Exception as e:
            logger.error(f"Analysis failed unexpectedly: {type(e).__name__}")
            self._fail_analysis(token, AnalysisError("unknown").message)
            return None

        if token != self._request_token:
            logger.info(f"Discarding superseded analysis of {pending.file_name}")
            return None

        doc = StoredDocument.create(pending.file_name, pending.data_url, analysis)
        if not self._store.save(doc):
            logger.warning(f"Document {doc.id} is shown but was not saved")
        self._release_pending()
        self._activate(doc)
        self._library = self._store.list()
        return doc

    def _fail_analysis(self, token: int, message: str) -> None:
        if token != self._request_token:
            logger.info("Discarding error from superseded analysis")
            return
        self._error = message
        self._state = SessionState.FILE_PENDING

    # -------------------------------------------------------------------------
    # Library
    # -------------------------------------------------------------------------

    def show_library(self) -> list[StoredDocument]:
        self._library = self._store.list()
        self._browsing = True
        return list(self._library)

    def select_from_library(self, doc_or_id: StoredDocument | str) -> StoredDocument:
        """Open a saved document without re-analyzing it.

        Raises:
            DocumentNotFoundError: If no saved document has that id.
        """
        doc_id = doc_or_id.id if isinstance(doc_or_id, StoredDocument) else doc_or_id
        doc = self._store.get(doc_id)
        if doc is None:
            raise DocumentNotFoundError(doc_id)

        self._request_token += 1
        self._release_pending()
        self._deactivate()
        self._activate(doc)
        return doc

    def delete_from_library(self, doc_id: str) -> bool:
        """Delete a saved document; closing it first if it is open.

        Returns:
            True if the document was removed from storage.
        """
        removed = self._store.delete(doc_id)
        if self.active_doc_id == doc_id:
            self._deactivate()
            self._result = None
            self._error = None
            self._state = SessionState.IDLE
            self._browsing = True
        self._library = self._store.list()
        return removed

    def clear(self) -> None:
        """Return to IDLE, dropping everything in progress."""
        self._request_token += 1
        self._release_pending()
        self._deactivate()
        self._result = None
        self._error = None
        self._browsing = False
        self._state = SessionState.IDLE

    # -------------------------------------------------------------------------
    # Chat
    # -------------------------------------------------------------------------

    def chat_update(self, history: list[ChatMessage], document_id: str | None = None) -> bool:
        """Apply a new chat history to the active document and persist it.

        Updates for a document that is no longer active are ignored.

        Returns:
            True if the history was persisted.
        """
        if self._active is None:
            logger.debug("Chat update ignored, no active document")
            return False
        if document_id is not None and document_id != self._active.id:
            logger.debug(f"Chat update ignored for inactive document {document_id}")
            return False

        self._active = self._active.with_chat_history(history)
        return self._store.update_chat_history(self._active.id, history)

    async def send_message(self, text: str) -> ChatMessage | None:
        """Ask a question about the active document.

        Returns:
            The model's reply, or None if a previous message is still
            pending or the document was closed before the reply arrived.

        Raises:
            NoActiveDocumentError: If no document is open.
            ValueError: If ``text`` is empty.
        """
        if self._active is None or self._chat_session is None:
            raise NoActiveDocumentError("Open a document before chatting")
        try:
            return await self._chat_manager.send(self._chat_session, text)
        except ChatBusyError:
            logger.warning("Message rejected, still waiting for the previous reply")
            return None

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _activate(self, doc: StoredDocument) -> None:
        self._active = doc
        self._result = doc.analysis
        self._error = None
        self._browsing = False
        self._state = SessionState.VIEWING
        self._chat_session = self._chat_manager.open(
            doc.id,
            doc.image_data,
            doc.chat_history,
            on_update=self._on_chat_update,
        )

    def _deactivate(self) -> None:
        if self._active is None:
            return
        self._chat_manager.close()
        self._chat_session = None
        self._active = None

    def _release_pending(self) -> None:
        if self._pending is not None:
            self._pending.preview.release()
            self._pending = None

    def _on_chat_update(self, document_id: str, history: list[ChatMessage]) -> None:
        self.chat_update(history, document_id=document_id)

    def _too_large_message(self, size: int) -> str:
        limit_mb = self._max_upload_bytes / (1024 * 1024)
        return f"File is too large ({size / (1024 * 1024):.1f} MB, limit {limit_mb:.0f} MB)"
