"""Core Data Models for CivicEase.

This module defines the records that flow between the Analysis Gateway, the
Chat Session Manager, the Library Store and the Document Session Controller.
They are the common language of the package: the gateway produces an
``AnalysisResult``, the controller wraps it in a ``StoredDocument``, and the
store serializes that document to disk.

Persisted documents keep the camelCase keys of the original browser library
(``fileName``, ``imageData``, ``chatHistory``, ``actionSteps``...), while the
Python attributes are snake_case. Both spellings are accepted on input so that
model output (``action_steps``) and stored records (``actionSteps``) validate
through the same model.

Example:
    >>> result = AnalysisResult(
    ...     summary="Tax notice",
    ...     urgency="high",
    ...     action_steps=["Pay by June 1"],
    ...     draft_reply="Dear Sir...",
    ... )
    >>> result.urgency
    <UrgencyLevel.HIGH: 'High'>
    >>> doc = StoredDocument.create("notice.png", "data:image/png;base64,...", result)
    >>> doc.model_dump(by_alias=True)["fileName"]
    'notice.png'
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from civicease.core.images import parse_data_url


# =============================================================================
# Enums
# =============================================================================


class UrgencyLevel(str, Enum):
    """Coarse triage tag attached to every analysis.

    Attributes:
        HIGH: Deadline soon or consequences for inaction (fines, cut-offs).
        MEDIUM: Needs a response, but not immediately.
        LOW: Informational; no action or a routine one.
        UNKNOWN: The model could not tell, or answered outside the scale.
    """

    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: Any) -> "UrgencyLevel":
        """Case-insensitive lookup; anything unrecognized is UNKNOWN."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            for level in cls:
                if level.value.lower() == normalized:
                    return level
        return cls.UNKNOWN


class ChatRole(str, Enum):
    """Author of a chat message."""

    USER = "user"
    MODEL = "model"


# =============================================================================
# Analysis
# =============================================================================


class AnalysisResult(BaseModel):
    """Structured triage of a single document.

    Immutable once produced. All four fields are required; ``action_steps``
    may be empty but must be present.

    Attributes:
        summary: Plain-language synopsis of the document.
        urgency: Triage level.
        action_steps: Sequential instructions for the reader, in order.
        draft_reply: Ready-to-send response text.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    summary: str
    urgency: UrgencyLevel
    action_steps: list[str]
    draft_reply: str

    @field_validator("urgency", mode="before")
    @classmethod
    def normalize_urgency(cls, v: Any) -> UrgencyLevel:
        """Accept any casing; map out-of-scale answers to Unknown."""
        return UrgencyLevel.parse(v)

    @field_validator("action_steps", mode="before")
    @classmethod
    def strip_empty_steps(cls, v: Any) -> Any:
        """Drop blank strings the model sometimes emits; anything else must validate."""
        if isinstance(v, list):
            return [
                step.strip() if isinstance(step, str) else step
                for step in v
                if not (isinstance(step, str) and not step.strip())
            ]
        return v


# =============================================================================
# Chat
# =============================================================================


class ChatMessage(BaseModel):
    """One turn in a document conversation."""

    model_config = ConfigDict(frozen=True)

    role: ChatRole
    text: str

    @classmethod
    def from_user(cls, text: str) -> "ChatMessage":
        return cls(role=ChatRole.USER, text=text)

    @classmethod
    def from_model(cls, text: str) -> "ChatMessage":
        return cls(role=ChatRole.MODEL, text=text)


ChatHistory = list[ChatMessage]


# =============================================================================
# Stored Document
# =============================================================================


def _now_ms() -> int:
    return int(time.time() * 1000)


class StoredDocument(BaseModel):
    """Unit of persistence in the library.

    Created exactly once, when analysis succeeds. Afterwards only
    ``chat_history`` changes; ``analysis`` is never recomputed.

    Attributes:
        id: Opaque unique identifier, stable for the document's lifetime.
        timestamp: Creation time in milliseconds since the epoch.
        file_name: Original upload name (display only).
        image_data: Self-contained ``data:<mime>;base64,...`` URL of the image.
        analysis: The analysis produced at creation.
        chat_history: Conversation about this document, oldest first.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: str
    timestamp: int = Field(default_factory=_now_ms)
    file_name: str
    image_data: str = Field(
        validation_alias=AliasChoices("imageData", "image_data", "imageBase64"),
        serialization_alias="imageData",
    )
    analysis: AnalysisResult
    chat_history: list[ChatMessage] = Field(default_factory=list)

    @field_validator("id", mode="before")
    @classmethod
    def require_id(cls, v: Any) -> str:
        """Reject blank ids; a record without one cannot be addressed again."""
        if v is None or not str(v).strip():
            raise ValueError("id must not be empty")
        return str(v)

    @classmethod
    def create(
        cls,
        file_name: str,
        image_data: str,
        analysis: AnalysisResult,
    ) -> "StoredDocument":
        """Mint a new document with a fresh id, the current time and no chat."""
        return cls(
            id=str(uuid.uuid4()),
            file_name=file_name,
            image_data=image_data,
            analysis=analysis,
            chat_history=[],
        )

    @property
    def created_at(self) -> datetime:
        """Creation time as a timezone-aware UTC datetime."""
        return datetime.fromtimestamp(self.timestamp / 1000, tz=timezone.utc)

    @property
    def mime_type(self) -> str:
        return parse_data_url(self.image_data)[1]

    def image_bytes(self) -> bytes:
        """Decode the stored image."""
        return parse_data_url(self.image_data)[0]

    def with_chat_history(self, history: list[ChatMessage]) -> "StoredDocument":
        """Return a copy carrying ``history``; every other field is untouched."""
        return self.model_copy(update={"chat_history": list(history)})

    def to_record(self) -> dict[str, Any]:
        """Serialize to the persisted (camelCase) record shape."""
        return self.model_dump(mode="json", by_alias=True)
