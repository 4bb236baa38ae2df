"""Analysis Gateway: the Gemini client for CivicEase.

This module is the SOLE INTERFACE to the Gemini API. No other file in the
codebase imports google-generativeai. It offers exactly two operations:

- ``analyze(image_bytes, mime_type)``: summarize and triage a document image
  into an ``AnalysisResult``.
- ``chat(image_bytes, mime_type, history, message)``: answer a follow-up
  question, grounded on the same image and the prior turns.

Both are blocking calls that take seconds. Neither is idempotent from a cost
point of view, so the gateway never retries on its own: every call is exactly
one provider request, and retrying is left to the user.

Errors come back as a small typed hierarchy:
- ``CredentialError``: no API key, or the key was rejected.
- ``AnalysisError``: the analysis request failed or produced invalid output.
- ``ChatError``: the chat turn failed.

Example:
    >>> gateway = get_gateway()
    >>> try:
    ...     result = gateway.analyze(image_bytes, "image/png")
    ... except CredentialError:
    ...     print("Check your API key")
    ... except AnalysisError as e:
    ...     print(f"Analysis failed ({e.reason})")

Security Rules:
- NEVER log API keys (ever, in any form)
- NEVER log prompts, document contents or model replies
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Literal, Protocol

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from google.generativeai.types import GenerationConfig, HarmBlockThreshold, HarmCategory
from pydantic import ValidationError

from civicease.ai.prompts import CHAT_SYSTEM, DOCUMENT_ANALYSIS_PROMPT
from civicease.config import APIKeyNotFoundError, AppConfig, get_api_key, get_config
from civicease.core.models import AnalysisResult, ChatMessage, ChatRole


# =============================================================================
# Secure Logging Filter
# =============================================================================


class RedactingFilter(logging.Filter):
    """Logging filter that redacts strings that look like API keys or tokens.

    Example:
        >>> logger.addFilter(RedactingFilter())
        >>> logger.info("Using api_key=AIzaSy123456789...")
        # Output: "Using api_key=[REDACTED]"
    """

    PATTERNS = [
        re.compile(r'(api_key\s*[=:]\s*)["\']?([a-zA-Z0-9_\-]{20,})["\']?', re.IGNORECASE),
        re.compile(r'(key\s*[=:]\s*)["\']?([a-zA-Z0-9_\-]{20,})["\']?', re.IGNORECASE),
        re.compile(r'(token\s*[=:]\s*)["\']?([a-zA-Z0-9_\-]{20,})["\']?', re.IGNORECASE),
        re.compile(r"(bearer\s+)([a-zA-Z0-9_\-]{20,})", re.IGNORECASE),
        # Gemini keys start with AIza
        re.compile(r"\bAIza[a-zA-Z0-9_\-]{30,}\b"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._redact(record.msg)
        if record.args:
            record.args = tuple(
                self._redact(arg) if isinstance(arg, str) else arg for arg in record.args
            )
        return True

    def _redact(self, text: str) -> str:
        for pattern in self.PATTERNS[:4]:
            text = pattern.sub(r"\1[REDACTED]", text)
        for pattern in self.PATTERNS[4:]:
            text = pattern.sub("[REDACTED]", text)
        return text


logger = logging.getLogger(__name__)
logger.addFilter(RedactingFilter())


# =============================================================================
# Exception Hierarchy
# =============================================================================


FailureReason = Literal[
    "network",
    "timeout",
    "rate_limited",
    "server",
    "blocked",
    "malformed_output",
    "bad_request",
    "unknown",
]


class AIClientError(Exception):
    """Base exception for all gateway errors.

    Attributes:
        message: Human-readable error description (safe to log and show).
        details: Additional context (may contain sensitive data, don't log).
        original_error: The underlying exception, if any.
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def __str__(self) -> str:
        """Return message without exposing sensitive details."""
        return self.message


class CredentialError(AIClientError):
    """The provider cannot be used with the configured credentials.

    Never retried automatically; the user has to fix configuration.

    Attributes:
        reason: ``no_api_key`` or ``unauthorized``.
    """

    def __init__(
        self,
        reason: Literal["no_api_key", "unauthorized"],
        message: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        self.reason = reason
        default_messages = {
            "no_api_key": "No Gemini API key configured",
            "unauthorized": "Gemini rejected the API key",
        }
        super().__init__(
            message or default_messages[reason],
            original_error=original_error,
        )


class _RequestError(AIClientError):
    """Shared shape of AnalysisError and ChatError."""

    default_messages: dict[str, str] = {}

    def __init__(
        self,
        reason: FailureReason,
        message: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        self.reason = reason
        super().__init__(
            message or self.default_messages.get(reason, self.default_messages["unknown"]),
            original_error=original_error,
        )


class AnalysisError(_RequestError):
    """Initial document analysis failed.

    Attributes:
        reason: Failure category (network, timeout, malformed_output, ...).
    """

    default_messages = {
        "network": "Could not reach the analysis service. Check your connection and try again.",
        "timeout": "The analysis took too long. Please try again.",
        "rate_limited": "The analysis service is busy. Wait a moment and try again.",
        "server": "The analysis service had a problem. Please try again.",
        "blocked": "The document could not be analyzed because it was blocked by safety filters.",
        "malformed_output": "The analysis came back incomplete. Please try again.",
        "bad_request": "The document could not be sent for analysis.",
        "unknown": "An unexpected error occurred. Please try again.",
    }


class ChatError(_RequestError):
    """A chat turn failed.

    Attributes:
        reason: Failure category (network, timeout, blocked, ...).
    """

    default_messages = {
        "network": "Could not reach the chat service.",
        "timeout": "The answer took too long.",
        "rate_limited": "The chat service is busy.",
        "server": "The chat service had a problem.",
        "blocked": "The answer was blocked by safety filters.",
        "malformed_output": "The answer came back empty.",
        "bad_request": "The question could not be sent.",
        "unknown": "An unexpected error occurred.",
    }


# =============================================================================
# Gateway Interface
# =============================================================================


class AnalysisGateway(Protocol):
    """What the core needs from a language-model backend."""

    def analyze(self, image_bytes: bytes, mime_type: str) -> AnalysisResult:
        """Analyze a document image. Raises CredentialError or AnalysisError."""
        ...

    def chat(
        self,
        image_bytes: bytes,
        mime_type: str,
        history: list[ChatMessage],
        message: str,
    ) -> str:
        """Answer ``message`` given the image and prior turns.

        Raises CredentialError or ChatError.
        """
        ...


# =============================================================================
# JSON Extraction
# =============================================================================


def parse_json_response(text: str) -> dict[str, Any] | None:
    """Parse a JSON object out of model output.

    Tries a direct parse, then a fenced ```json block, then the first
    ``{...}`` span in the text.

    Returns:
        The parsed object, or None if no JSON object could be recovered.
    """
    text = text.strip()
    if not text:
        return None

    candidates = [text]
    fenced = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text)
    if fenced:
        candidates.append(fenced.group(1))
    braces = re.search(r"\{[\s\S]*\}", text)
    if braces:
        candidates.append(braces.group(0))

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


# =============================================================================
# Gemini Gateway
# =============================================================================


class GeminiGateway:
    """AnalysisGateway backed by Google Gemini.

    The SDK is configured lazily on the first request, so constructing a
    gateway never fails and never touches the network.

    Example:
        >>> gateway = GeminiGateway()
        >>> result = gateway.analyze(png_bytes, "image/png")
        >>> result.urgency
        <UrgencyLevel.HIGH: 'High'>
        >>> gateway.chat(png_bytes, "image/png", [], "What's the deadline?")
        'The notice asks for payment by June 1.'
    """

    KEY_ERROR_MARKERS = ("api key", "api_key", "permission", "unauthenticated")

    def __init__(self, config: AppConfig | None = None, api_key: str | None = None) -> None:
        self._config = config or get_config()
        self._api_key = api_key
        self._is_configured = False
        self._models: dict[str, Any] = {}
        self._logger = logging.getLogger(f"{__name__}.GeminiGateway")
        if not any(isinstance(f, RedactingFilter) for f in self._logger.filters):
            self._logger.addFilter(RedactingFilter())

    @property
    def model_name(self) -> str:
        return self._config.ai.model_name

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def analyze(self, image_bytes: bytes, mime_type: str) -> AnalysisResult:
        """Summarize and triage a document image.

        Raises:
            CredentialError: No API key, or the key was rejected.
            AnalysisError: The request failed or the output did not validate.
        """
        self._ensure_configured()
        system, user = DOCUMENT_ANALYSIS_PROMPT.render()
        model = self._get_model(system)
        contents = [_image_part(image_bytes, mime_type), user]

        start_time = time.time()
        try:
            raw_response = model.generate_content(
                contents,
                generation_config=self._get_generation_config(
                    response_mime_type="application/json"
                ),
                request_options={"timeout": self._config.ai.timeout_seconds},
            )
        except Exception as e:
            raise self._map_exception(e, AnalysisError) from e

        text = self._response_text(raw_response, AnalysisError)
        data = parse_json_response(text)
        if data is None:
            self._logger.warning("Analysis output was not a JSON object")
            raise AnalysisError("malformed_output")

        try:
            result = AnalysisResult.model_validate(data)
        except ValidationError as e:
            self._logger.warning(f"Analysis output failed validation: {e.error_count()} errors")
            raise AnalysisError("malformed_output", original_error=e) from e

        latency_ms = (time.time() - start_time) * 1000
        self._logger.info(
            f"Analysis successful in {latency_ms:.0f}ms",
            extra={"model": self.model_name, "time_ms": latency_ms},
        )
        return result

    def chat(
        self,
        image_bytes: bytes,
        mime_type: str,
        history: list[ChatMessage],
        message: str,
    ) -> str:
        """Answer a follow-up question about a document.

        The image is attached to the logical first user turn only: to the
        new message when there is no history, otherwise to the first user
        turn of the replayed history. Later turns carry text only.

        Returns:
            The model's reply; empty if the model produced no text.

        Raises:
            CredentialError: No API key, or the key was rejected.
            ChatError: The request failed or the reply was blocked.
        """
        self._ensure_configured()
        model = self._get_model(CHAT_SYSTEM)

        contents, new_parts = build_chat_contents(image_bytes, mime_type, history, message)

        start_time = time.time()
        try:
            session = model.start_chat(history=contents)
            raw_response = session.send_message(
                new_parts,
                generation_config=self._get_generation_config(),
                request_options={"timeout": self._config.ai.timeout_seconds},
            )
        except Exception as e:
            raise self._map_exception(e, ChatError) from e

        text = self._response_text(raw_response, ChatError)
        latency_ms = (time.time() - start_time) * 1000
        self._logger.info(
            f"Chat turn successful in {latency_ms:.0f}ms ({len(history)} prior turns)",
            extra={"model": self.model_name, "time_ms": latency_ms},
        )
        return text.strip()

    def is_available(self) -> bool:
        """Check for a usable API key without making an API call."""
        try:
            self._ensure_configured()
        except CredentialError:
            return False
        return True

    # -------------------------------------------------------------------------
    # SDK plumbing
    # -------------------------------------------------------------------------

    def _ensure_configured(self) -> None:
        if self._is_configured:
            return

        if not self._api_key:
            try:
                self._api_key = get_api_key().get_secret_value()
            except APIKeyNotFoundError as e:
                raise CredentialError("no_api_key", original_error=e) from e

        genai.configure(api_key=self._api_key)
        self._is_configured = True
        self._logger.info(f"Gemini configured with model: {self.model_name}")

    def _get_model(self, system_instruction: str) -> Any:
        model = self._models.get(system_instruction)
        if model is None:
            model = genai.GenerativeModel(
                model_name=self.model_name,
                system_instruction=system_instruction,
                safety_settings=self._get_safety_settings(),
            )
            self._models[system_instruction] = model
        return model

    def _get_generation_config(self, **overrides: Any) -> GenerationConfig:
        config_params: dict[str, Any] = {
            "temperature": self._config.ai.temperature,
            "max_output_tokens": self._config.ai.max_output_tokens,
        }
        config_params.update(overrides)
        return GenerationConfig(**config_params)

    def _get_safety_settings(self) -> dict:
        # Official letters talk about debt, eviction and penalties; only block clear harm.
        return {
            HarmCategory.HARM_CATEGORY_HARASSMENT: HarmBlockThreshold.BLOCK_ONLY_HIGH,
            HarmCategory.HARM_CATEGORY_HATE_SPEECH: HarmBlockThreshold.BLOCK_ONLY_HIGH,
            HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
            HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT: HarmBlockThreshold.BLOCK_ONLY_HIGH,
        }

    def _response_text(self, raw_response: Any, error_cls: type[_RequestError]) -> str:
        try:
            return raw_response.text or ""
        except ValueError:
            # No text parts: either blocked or an empty candidate
            feedback = getattr(raw_response, "prompt_feedback", None)
            if feedback is not None and getattr(feedback, "block_reason", None):
                self._logger.warning(f"Response blocked: {feedback.block_reason}")
                raise error_cls("blocked")
            return ""

    def _map_exception(
        self, error: Exception, error_cls: type[_RequestError]
    ) -> AIClientError:
        """Map SDK exceptions onto CredentialError or ``error_cls``."""
        error_str = str(error).lower()
        self._logger.error(f"Gemini request failed: {type(error).__name__}")

        if isinstance(error, (google_exceptions.Unauthenticated, google_exceptions.PermissionDenied)):
            return CredentialError("unauthorized", original_error=error)

        if isinstance(error, google_exceptions.InvalidArgument):
            if any(marker in error_str for marker in self.KEY_ERROR_MARKERS):
                return CredentialError("unauthorized", original_error=error)
            return error_cls("bad_request", original_error=error)

        if isinstance(error, google_exceptions.ResourceExhausted):
            return error_cls("rate_limited", original_error=error)

        if isinstance(error, google_exceptions.DeadlineExceeded):
            return error_cls("timeout", original_error=error)

        if isinstance(error, (google_exceptions.InternalServerError, google_exceptions.ServiceUnavailable)):
            return error_cls("server", original_error=error)

        if isinstance(error, google_exceptions.NotFound):
            return error_cls(
                "bad_request",
                message=f"Model '{self.model_name}' not found. Check the model name in configuration.",
                original_error=error,
            )

        if isinstance(error, TimeoutError):
            return error_cls("timeout", original_error=error)

        if isinstance(error, (ConnectionError, OSError)):
            return error_cls("network", original_error=error)

        # Fallback pattern matching on error message
        if "api key" in error_str or "401" in error_str or "403" in error_str:
            return CredentialError("unauthorized", original_error=error)
        if "blocked" in error_str or "safety" in error_str:
            return error_cls("blocked", original_error=error)
        if "429" in error_str or "quota" in error_str:
            return error_cls("rate_limited", original_error=error)
        if "timeout" in error_str or "deadline" in error_str:
            return error_cls("timeout", original_error=error)
        if "500" in error_str or "502" in error_str or "503" in error_str:
            return error_cls("server", original_error=error)

        return error_cls("unknown", original_error=error)


def _image_part(image_bytes: bytes, mime_type: str) -> dict[str, Any]:
    return {"mime_type": mime_type, "data": image_bytes}


def build_chat_contents(
    image_bytes: bytes,
    mime_type: str,
    history: list[ChatMessage],
    message: str,
) -> tuple[list[dict[str, Any]], list[Any]]:
    """Lay out prior turns and the new message for a Gemini chat session.

    Returns:
        Tuple of (history contents, parts of the new message). The image is
        part of exactly one user turn: the first one.
    """
    contents: list[dict[str, Any]] = [
        {"role": turn.role.value, "parts": [turn.text]} for turn in history
    ]
    for turn in contents:
        if turn["role"] == ChatRole.USER.value:
            turn["parts"].insert(0, _image_part(image_bytes, mime_type))
            return contents, [message]
    return contents, [_image_part(image_bytes, mime_type), message]


def get_gateway(config: AppConfig | None = None) -> GeminiGateway:
    """Factory for the default Gemini-backed gateway."""
    return GeminiGateway(config=config)
