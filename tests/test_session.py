"""Tests for civicease.core.session - the document session controller.

Covers the state machine end to end against a scripted gateway and an
in-memory library: upload, analysis success and failure, library
navigation, chat routing, and what happens to results that arrive after
the user has moved on.
"""

from __future__ import annotations

import asyncio

import pytest
from PIL import Image

from civicease.ai.chat import ERROR_NOTICE
from civicease.ai.client import AnalysisError, ChatError, CredentialError
from civicease.core.library import LibraryStore, MemoryLibraryStorage
from civicease.core.models import ChatMessage, ChatRole
from civicease.core.session import (
    CREDENTIAL_ERROR_MESSAGE,
    DocumentNotFoundError,
    DocumentSessionController,
    NoActiveDocumentError,
    SessionState,
    UnsupportedFileError,
)

from conftest import ScriptedGateway, make_analysis, make_document, make_image_bytes


def analyze(controller):
    return asyncio.run(controller.analyze())


def send(controller, text):
    return asyncio.run(controller.send_message(text))


@pytest.fixture
def saved_document(store):
    doc = make_document("saved.png", analysis=make_analysis(summary="Saved earlier"))
    store.save(doc)
    return doc


@pytest.fixture
def viewing(controller, png_bytes):
    """Controller showing a freshly analyzed document."""
    controller.select_file_bytes("notice.png", png_bytes)
    analyze(controller)
    assert controller.state is SessionState.VIEWING
    return controller


# =============================================================================
# Initial State
# =============================================================================


class TestInitialState:
    def test_starts_idle(self, controller):
        assert controller.state is SessionState.IDLE
        assert controller.browsing is False
        assert controller.active_doc_id is None
        assert controller.active_document is None
        assert controller.result is None
        assert controller.error is None
        assert controller.pending is None
        assert controller.chat_history == []

    def test_loads_library(self, store, gateway, previews, saved_document):
        controller = DocumentSessionController(store, gateway, preview_factory=previews)
        assert [d.id for d in controller.library] == [saved_document.id]


# =============================================================================
# Selecting Files
# =============================================================================


class TestSelectFile:
    def test_select_bytes(self, controller, png_bytes, previews):
        assert controller.select_file_bytes("notice.png", png_bytes) is True

        assert controller.state is SessionState.FILE_PENDING
        assert controller.pending.file_name == "notice.png"
        assert controller.pending.mime_type == "image/png"
        assert controller.pending.preview.path.exists()
        assert previews.outstanding == 1

    def test_select_path(self, controller, notice_path):
        controller.select_file(notice_path)

        assert controller.pending.file_name == "notice.png"
        assert controller.pending.image_bytes == notice_path.read_bytes()

    def test_missing_path(self, controller, tmp_path):
        with pytest.raises(UnsupportedFileError):
            controller.select_file(tmp_path / "nope.png")
        assert controller.state is SessionState.IDLE

    def test_rejects_non_image_without_state_change(self, controller, png_bytes, previews):
        controller.select_file_bytes("notice.png", png_bytes)

        with pytest.raises(UnsupportedFileError):
            controller.select_file_bytes("letter.pdf", b"%PDF-1.7")

        assert controller.state is SessionState.FILE_PENDING
        assert controller.pending.file_name == "notice.png"
        assert previews.outstanding == 1

    def test_rejects_oversized_file(self, store, gateway, previews, png_bytes):
        controller = DocumentSessionController(
            store, gateway, preview_factory=previews, max_upload_bytes=len(png_bytes) - 1
        )
        with pytest.raises(UnsupportedFileError, match="too large"):
            controller.select_file_bytes("notice.png", png_bytes)
        assert controller.state is SessionState.IDLE
        assert previews.created == 0

    def test_rejects_decompression_bomb(self, controller, png_bytes, previews, monkeypatch):
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)

        with pytest.raises(UnsupportedFileError):
            controller.select_file_bytes("huge.png", png_bytes)

        assert controller.state is SessionState.IDLE
        assert previews.created == 0

    def test_replacing_pending_file_releases_preview(self, controller, png_bytes, jpeg_bytes, previews):
        controller.select_file_bytes("first.png", png_bytes)
        first_preview = controller.pending.preview
        controller.select_file_bytes("second.jpg", jpeg_bytes)

        assert first_preview.released
        assert controller.pending.file_name == "second.jpg"
        assert previews.outstanding == 1

    def test_selecting_while_viewing_deactivates_without_mutation(self, viewing, store, jpeg_bytes):
        doc_id = viewing.active_doc_id
        before = store.get(doc_id)

        viewing.select_file_bytes("next.jpg", jpeg_bytes)

        assert viewing.state is SessionState.FILE_PENDING
        assert viewing.active_doc_id is None
        assert viewing.result is None
        assert viewing.chat_history == []
        assert store.get(doc_id) == before


# =============================================================================
# Analysis
# =============================================================================


class TestAnalyze:
    def test_success(self, controller, store, gateway, png_bytes, previews):
        controller.select_file_bytes("notice.png", png_bytes)

        doc = analyze(controller)

        assert controller.state is SessionState.VIEWING
        assert controller.active_doc_id == doc.id
        assert controller.result == make_analysis()
        assert controller.error is None
        assert controller.pending is None
        assert controller.chat_history == []
        assert previews.outstanding == 0

        assert store.list()[0] == doc
        assert doc.file_name == "notice.png"
        assert doc.image_bytes() == png_bytes
        assert doc.chat_history == []
        assert gateway.analyze_calls == [(png_bytes, "image/png")]
        assert controller.library[0].id == doc.id

    def test_new_documents_are_listed_first(self, controller, png_bytes, saved_document):
        controller.select_file_bytes("notice.png", png_bytes)
        doc = analyze(controller)
        assert [d.id for d in controller.show_library()] == [doc.id, saved_document.id]

    def test_failure_keeps_file_for_retry(self, controller, store, gateway, png_bytes, previews):
        gateway.analyses = [AnalysisError("timeout")]
        controller.select_file_bytes("notice.png", png_bytes)

        assert analyze(controller) is None

        assert controller.state is SessionState.FILE_PENDING
        assert controller.error == AnalysisError("timeout").message
        assert controller.pending.file_name == "notice.png"
        assert previews.outstanding == 1
        assert store.list() == []

        doc = analyze(controller)
        assert doc is not None
        assert controller.error is None
        assert controller.state is SessionState.VIEWING
        assert previews.outstanding == 0
        assert len(gateway.analyze_calls) == 2

    def test_credential_failure_message(self, controller, gateway, png_bytes):
        gateway.analyses = [CredentialError("no_api_key")]
        controller.select_file_bytes("notice.png", png_bytes)

        analyze(controller)

        assert controller.error == CREDENTIAL_ERROR_MESSAGE
        assert controller.state is SessionState.FILE_PENDING

    def test_unexpected_gateway_error_returns_to_pending(self, controller, store, gateway, png_bytes, jpeg_bytes):
        gateway.analyses = [RuntimeError("sdk exploded")]
        controller.select_file_bytes("notice.png", png_bytes)

        assert analyze(controller) is None

        assert controller.state is SessionState.FILE_PENDING
        assert controller.error == AnalysisError("unknown").message
        assert store.list() == []
        assert controller.select_file_bytes("other.jpg", jpeg_bytes) is True
        assert analyze(controller) is not None

    def test_ignored_without_pending_file(self, controller, gateway):
        assert analyze(controller) is None
        assert controller.state is SessionState.IDLE
        assert gateway.analyze_calls == []

    def test_ignored_while_viewing(self, viewing, gateway):
        assert analyze(viewing) is None
        assert len(gateway.analyze_calls) == 1

    def test_save_failure_still_shows_result(self, controller, memory_storage, png_bytes):
        memory_storage.fail_writes = True
        controller.select_file_bytes("notice.png", png_bytes)

        doc = analyze(controller)

        assert controller.state is SessionState.VIEWING
        assert controller.active_doc_id == doc.id
        assert controller.library == []

    def test_select_file_ignored_while_analyzing(self, controller, gateway, png_bytes, jpeg_bytes, previews):
        gateway.hold()
        controller.select_file_bytes("notice.png", png_bytes)

        async def scenario():
            task = asyncio.create_task(controller.analyze())
            await asyncio.to_thread(gateway.started.wait, 5)
            assert controller.state is SessionState.ANALYZING
            accepted = controller.select_file_bytes("other.jpg", jpeg_bytes)
            second = await controller.analyze()
            gateway.release()
            return accepted, second, await task

        accepted, second, doc = asyncio.run(scenario())

        assert accepted is False
        assert second is None
        assert doc.file_name == "notice.png"
        assert previews.created == 1
        assert len(gateway.analyze_calls) == 1


# =============================================================================
# Superseded Requests
# =============================================================================


class TestSupersededAnalysis:
    def test_clear_discards_result(self, controller, store, gateway, png_bytes, previews):
        gateway.hold()
        controller.select_file_bytes("notice.png", png_bytes)

        async def scenario():
            task = asyncio.create_task(controller.analyze())
            await asyncio.to_thread(gateway.started.wait, 5)
            controller.clear()
            gateway.release()
            return await task

        assert asyncio.run(scenario()) is None
        assert controller.state is SessionState.IDLE
        assert controller.result is None
        assert controller.active_doc_id is None
        assert store.list() == []
        assert previews.outstanding == 0
        assert previews.released == 1

    def test_clear_discards_error(self, controller, gateway, png_bytes):
        gateway.hold()
        gateway.analyses = [AnalysisError("server")]
        controller.select_file_bytes("notice.png", png_bytes)

        async def scenario():
            task = asyncio.create_task(controller.analyze())
            await asyncio.to_thread(gateway.started.wait, 5)
            controller.clear()
            gateway.release()
            return await task

        asyncio.run(scenario())
        assert controller.state is SessionState.IDLE
        assert controller.error is None

    def test_library_selection_wins(self, controller, store, gateway, png_bytes, saved_document, previews):
        gateway.hold()
        controller.select_file_bytes("notice.png", png_bytes)

        async def scenario():
            task = asyncio.create_task(controller.analyze())
            await asyncio.to_thread(gateway.started.wait, 5)
            controller.select_from_library(saved_document.id)
            gateway.release()
            return await task

        assert asyncio.run(scenario()) is None
        assert controller.state is SessionState.VIEWING
        assert controller.active_doc_id == saved_document.id
        assert controller.result.summary == "Saved earlier"
        assert [d.id for d in store.list()] == [saved_document.id]
        assert previews.outstanding == 0


# =============================================================================
# Library Navigation
# =============================================================================


class TestLibrary:
    def test_show_library_sets_browsing(self, controller, saved_document):
        documents = controller.show_library()

        assert controller.browsing is True
        assert [d.id for d in documents] == [saved_document.id]

    def test_select_from_library(self, controller, gateway, saved_document):
        controller.show_library()

        doc = controller.select_from_library(saved_document)

        assert doc == saved_document
        assert controller.state is SessionState.VIEWING
        assert controller.browsing is False
        assert controller.result == saved_document.analysis
        assert gateway.analyze_calls == []

    def test_select_restores_chat_history(self, store, controller):
        history = [ChatMessage.from_user("When?"), ChatMessage.from_model("June 1.")]
        doc = make_document(chat_history=history)
        store.save(doc)

        controller.select_from_library(doc.id)

        assert controller.chat_history == history

    def test_unknown_id(self, controller):
        with pytest.raises(DocumentNotFoundError):
            controller.select_from_library("missing")
        assert controller.state is SessionState.IDLE

    def test_select_discards_pending_upload(self, controller, png_bytes, saved_document, previews):
        controller.select_file_bytes("notice.png", png_bytes)

        controller.select_from_library(saved_document.id)

        assert controller.pending is None
        assert previews.outstanding == 0

    def test_delete_active_document(self, viewing, store):
        doc_id = viewing.active_doc_id

        assert viewing.delete_from_library(doc_id) is True

        assert viewing.state is SessionState.IDLE
        assert viewing.browsing is True
        assert viewing.active_doc_id is None
        assert viewing.result is None
        assert store.get(doc_id) is None
        with pytest.raises(NoActiveDocumentError):
            send(viewing, "Hello?")

    def test_delete_other_document(self, viewing, store, saved_document):
        active = viewing.active_doc_id

        assert viewing.delete_from_library(saved_document.id) is True

        assert viewing.state is SessionState.VIEWING
        assert viewing.active_doc_id == active
        assert [d.id for d in viewing.library] == [active]

    def test_delete_missing(self, controller):
        assert controller.delete_from_library("missing") is False

    def test_clear(self, viewing, store):
        doc_id = viewing.active_doc_id

        viewing.clear()

        assert viewing.state is SessionState.IDLE
        assert viewing.active_doc_id is None
        assert viewing.result is None
        assert store.get(doc_id) is not None


# =============================================================================
# Chat
# =============================================================================


class TestChat:
    def test_turn_is_persisted(self, viewing, store):
        reply = send(viewing, "When is it due?")

        assert reply.text == ScriptedGateway.DEFAULT_REPLY
        assert [m.role for m in viewing.chat_history] == [ChatRole.USER, ChatRole.MODEL]
        assert store.get(viewing.active_doc_id).chat_history == viewing.chat_history
        assert viewing.active_document.chat_history == viewing.chat_history

    def test_failure_is_persisted_as_notice(self, viewing, store, gateway):
        gateway.replies = [ChatError("server")]

        send(viewing, "When is it due?")

        stored = store.get(viewing.active_doc_id).chat_history
        assert [m.text for m in stored] == ["When is it due?", ERROR_NOTICE]

    def test_unexpected_gateway_error_is_persisted_as_notice(self, viewing, store, gateway):
        gateway.replies = [RuntimeError("sdk exploded")]

        reply = send(viewing, "hi")

        assert reply.text == ERROR_NOTICE
        stored = store.get(viewing.active_doc_id).chat_history
        assert [(m.role, m.text) for m in stored] == [
            (ChatRole.USER, "hi"),
            (ChatRole.MODEL, ERROR_NOTICE),
        ]

    def test_gateway_gets_document_image(self, viewing, gateway, png_bytes):
        send(viewing, "When?")
        image_bytes, mime_type, history, message = gateway.chat_calls[0]

        assert image_bytes == png_bytes
        assert mime_type == "image/png"
        assert history == []
        assert message == "When?"

    def test_no_active_document(self, controller):
        with pytest.raises(NoActiveDocumentError):
            send(controller, "Hello?")

    def test_concurrent_send_is_rejected(self, viewing, gateway):
        gateway.hold()

        async def scenario():
            first = asyncio.create_task(viewing.send_message("First"))
            await asyncio.to_thread(gateway.started.wait, 5)
            second = await viewing.send_message("Second")
            gateway.release()
            return second, await first

        second, first = asyncio.run(scenario())

        assert second is None
        assert first is not None
        assert [m.text for m in viewing.chat_history] == ["First", ScriptedGateway.DEFAULT_REPLY]

    def test_reply_for_previous_document_is_dropped(self, viewing, store, gateway, saved_document):
        first_id = viewing.active_doc_id
        gateway.hold()

        async def scenario():
            task = asyncio.create_task(viewing.send_message("About the first one"))
            await asyncio.to_thread(gateway.started.wait, 5)
            viewing.select_from_library(saved_document.id)
            gateway.release()
            return await task

        assert asyncio.run(scenario()) is None

        assert viewing.active_doc_id == saved_document.id
        assert viewing.chat_history == []
        assert store.get(saved_document.id).chat_history == []
        assert [m.text for m in store.get(first_id).chat_history] == ["About the first one"]

    def test_chat_update_for_inactive_document_is_ignored(self, viewing, store, saved_document):
        history = [ChatMessage.from_user("Stray")]

        assert viewing.chat_update(history, document_id=saved_document.id) is False
        assert store.get(saved_document.id).chat_history == []

    def test_chat_update_without_active_document(self, controller):
        assert controller.chat_update([ChatMessage.from_user("Stray")]) is False

    def test_chat_update_for_active_document(self, viewing, store):
        history = [ChatMessage.from_user("Hi"), ChatMessage.from_model("Hello")]

        assert viewing.chat_update(history) is True
        assert viewing.chat_history == history
        assert store.get(viewing.active_doc_id).chat_history == history


# =============================================================================
# Full Session
# =============================================================================


def test_full_session_walkthrough(tmp_path, previews):
    """Upload, analyze, chat, browse, reopen and delete in one session."""
    store = LibraryStore(MemoryLibraryStorage())
    gateway = ScriptedGateway(
        analyses=[make_analysis(summary="Water shut-off warning")],
        replies=["Call the utility before Friday."],
    )
    controller = DocumentSessionController(store, gateway, preview_factory=previews)

    controller.select_file_bytes("water.jpg", make_image_bytes("JPEG"))
    doc = analyze(controller)
    send(controller, "What should I do first?")
    controller.clear()

    documents = controller.show_library()
    assert [d.id for d in documents] == [doc.id]

    controller.select_from_library(documents[0])
    assert controller.result.summary == "Water shut-off warning"
    assert [m.text for m in controller.chat_history] == [
        "What should I do first?",
        "Call the utility before Friday.",
    ]

    controller.delete_from_library(doc.id)
    assert controller.state is SessionState.IDLE
    assert controller.browsing is True
    assert controller.show_library() == []
    assert previews.outstanding == 0
