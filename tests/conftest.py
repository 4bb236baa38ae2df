"""Central Pytest Fixtures for CivicEase.

This module provides reusable test data, gateway doubles and storage across
all test modules. No fixture reaches the network.

Fixtures included:
- Images: png_bytes, jpeg_bytes, notice_path
- Core data: sample_analysis, sample_document
- Storage: memory_storage, store
- AI: gateway (a ScriptedGateway)
- Controller: previews, controller
"""

from __future__ import annotations

import os
import threading
from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image

from civicease.config import reset_config
from civicease.core.images import PreviewFactory, to_data_url
from civicease.core.library import LibraryStore, MemoryLibraryStorage
from civicease.core.models import AnalysisResult, ChatMessage, StoredDocument, UrgencyLevel
from civicease.core.session import DocumentSessionController

# =============================================================================
# Helper Functions
# =============================================================================


def make_image_bytes(
    image_format: str = "PNG",
    width: int = 64,
    height: int = 48,
    color: str = "white",
) -> bytes:
    """Render a solid-color image in memory."""
    img = Image.new("RGB", (width, height), color=color)
    buffer = BytesIO()
    img.save(buffer, format=image_format)
    return buffer.getvalue()


def create_test_image(path: Path, width: int = 100, height: int = 100, color: str = "red") -> Path:
    """Helper to create a test image file.

    Args:
        path: Where to save the image.
        width: Width in pixels.
        height: Height in pixels.
        color: Solid color for the image.

    Returns:
        Path to the created image.
    """
    img = Image.new("RGB", (width, height), color=color)
    img.save(path)
    return path


def make_analysis(**overrides) -> AnalysisResult:
    """Build an AnalysisResult with sensible defaults."""
    fields = {
        "summary": "Your property tax bill is due.",
        "urgency": UrgencyLevel.HIGH,
        "action_steps": ["Pay $1,200 by June 1", "Keep the receipt"],
        "draft_reply": "Dear Tax Office, I will pay by June 1.",
    }
    fields.update(overrides)
    return AnalysisResult(**fields)


def make_document(file_name: str = "notice.png", **overrides) -> StoredDocument:
    """Build a StoredDocument around a small PNG."""
    doc = StoredDocument.create(
        file_name,
        to_data_url(make_image_bytes(), "image/png"),
        overrides.pop("analysis", make_analysis()),
    )
    if overrides:
        doc = doc.model_copy(update=overrides)
    return doc


class ScriptedGateway:
    """Gateway double that replays scripted outcomes in order.

    Outcomes are return values, or exceptions to raise. When the script runs
    out, analyze returns ``make_analysis()`` and chat returns a fixed reply.

    ``hold()`` makes the next calls block until ``release()``, so tests can
    act while a request is in flight. ``started`` is set when a call begins.
    """

    DEFAULT_REPLY = "The deadline is June 1."

    def __init__(self, analyses=None, replies=None) -> None:
        self.analyses = list(analyses or [])
        self.replies = list(replies or [])
        self.analyze_calls: list[tuple[bytes, str]] = []
        self.chat_calls: list[tuple[bytes, str, list[ChatMessage], str]] = []
        self.started = threading.Event()
        self._gate: threading.Event | None = None

    def hold(self) -> None:
        self.started.clear()
        self._gate = threading.Event()

    def release(self) -> None:
        if self._gate is not None:
            self._gate.set()
            self._gate = None

    def _wait(self) -> None:
        gate = self._gate
        self.started.set()
        if gate is not None:
            gate.wait(timeout=5)

    def analyze(self, image_bytes: bytes, mime_type: str) -> AnalysisResult:
        self.analyze_calls.append((image_bytes, mime_type))
        self._wait()
        outcome = self.analyses.pop(0) if self.analyses else make_analysis()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def chat(self, image_bytes: bytes, mime_type: str, history: list[ChatMessage], message: str) -> str:
        self.chat_calls.append((image_bytes, mime_type, list(history), message))
        self._wait()
        outcome = self.replies.pop(0) if self.replies else self.DEFAULT_REPLY
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


# =============================================================================
# Environment
# =============================================================================


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep real configuration and API keys out of every test."""
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    for name in list(os.environ):
        if name.upper().startswith("CIVICEASE_"):
            monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


# =============================================================================
# Images
# =============================================================================


@pytest.fixture
def png_bytes() -> bytes:
    return make_image_bytes("PNG")


@pytest.fixture
def jpeg_bytes() -> bytes:
    return make_image_bytes("JPEG", color="blue")


@pytest.fixture
def notice_path(tmp_path: Path) -> Path:
    return create_test_image(tmp_path / "notice.png")


# =============================================================================
# Core Data
# =============================================================================


@pytest.fixture
def sample_analysis() -> AnalysisResult:
    return make_analysis()


@pytest.fixture
def sample_document() -> StoredDocument:
    return make_document()


# =============================================================================
# Storage and Controller
# =============================================================================


@pytest.fixture
def memory_storage() -> MemoryLibraryStorage:
    return MemoryLibraryStorage()


@pytest.fixture
def store(memory_storage: MemoryLibraryStorage) -> LibraryStore:
    return LibraryStore(memory_storage)


@pytest.fixture
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
def previews(tmp_path: Path) -> PreviewFactory:
    preview_dir = tmp_path / "previews"
    preview_dir.mkdir()
    return PreviewFactory(max_dim=32, directory=preview_dir)


@pytest.fixture
def controller(store, gateway, previews) -> DocumentSessionController:
    return DocumentSessionController(store, gateway, preview_factory=previews, max_upload_bytes=1024 * 1024)
