"""AI module for CivicEase.

This module provides the interface to Google's Gemini LLM for document
analysis and follow-up chat. The client.py module is the SOLE interface to
the Gemini API; no other file should import google-generativeai.

Exports:
    - GeminiGateway: Gateway backed by Gemini
    - AnalysisGateway: Protocol the core depends on
    - get_gateway: Factory function to create a configured gateway
    - ChatSessionManager / ChatSession: Per-document conversations
    - Exception hierarchy for typed error handling
"""

from civicease.ai.chat import (
    ChatBusyError,
    ChatSession,
    ChatSessionClosedError,
    ChatSessionManager,
)
from civicease.ai.client import (
    # Gateway
    AnalysisGateway,
    GeminiGateway,
    get_gateway,
    parse_json_response,
    # Exceptions
    AIClientError,
    AnalysisError,
    ChatError,
    CredentialError,
)
from civicease.ai.prompts import DOCUMENT_ANALYSIS_PROMPT, PromptTemplate

__all__ = [
    "AIClientError",
    "DOCUMENT_ANALYSIS_PROMPT",
    "AnalysisError",
    "AnalysisGateway",
    "ChatBusyError",
    "ChatError",
    "ChatSession",
    "ChatSessionClosedError",
    "ChatSessionManager",
    "CredentialError",
    "GeminiGateway",
    "PromptTemplate",
    "get_gateway",
    "parse_json_response",
]
