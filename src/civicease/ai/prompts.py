"""Prompt templates sent to Gemini.

Every prompt the gateway uses lives here. Analysis goes through a template
with a system instruction, a user prompt and the expected JSON schema; chat
only needs a system instruction because the question is sent verbatim.

Example:
    >>> system, user = DOCUMENT_ANALYSIS_PROMPT.render()
"""

from __future__ import annotations

import json
import textwrap
from dataclasses import dataclass
from string import Template
from typing import Any


@dataclass
class PromptTemplate:
    """Metadata and content for a prompt template.

    Attributes:
        id: Unique identifier (e.g., "document_analysis_v1").
        version: Version string for tracking changes.
        system_instruction: Role and behavior instructions for the model.
        user_prompt_template: User prompt with $placeholder variables.
        output_schema: Expected JSON shape for structured outputs.
        description: What the prompt is for.
    """

    id: str
    version: str
    system_instruction: str
    user_prompt_template: str
    output_schema: dict[str, Any] | None = None
    description: str = ""

    def render(self, **variables: Any) -> tuple[str, str]:
        """Render the template.

        Returns:
            Tuple of (system_instruction, rendered_user_prompt).
        """
        if self.output_schema and "output_schema" not in variables:
            variables["output_schema"] = render_output_schema(self.output_schema)

        rendered = Template(self.user_prompt_template).safe_substitute(variables)
        return self.system_instruction, rendered


# =============================================================================
# System Instructions
# =============================================================================


CASEWORKER_SYSTEM = textwrap.dedent(
    """
    You are a patient caseworker who helps ordinary people understand official
    letters, forms and notices from government agencies, courts, landlords,
    utilities and insurers. You explain in plain language, at roughly an
    eighth-grade reading level, without legal jargon. You never invent
    deadlines, amounts or reference numbers that are not visible in the
    document; when something is unclear you say so.
    """
).strip()

CHAT_SYSTEM = textwrap.dedent(
    """
    You are a patient caseworker answering follow-up questions about the
    official document shown in the first message of this conversation.
    Ground every answer in that document. If the document does not contain
    the answer, say so plainly and suggest who the reader could contact.
    Keep answers short and concrete.
    """
).strip()


# =============================================================================
# Schemas
# =============================================================================


DOCUMENT_ANALYSIS_SCHEMA: dict[str, Any] = {
    "summary": "string - two or three sentences on what the document is and what it wants",
    "urgency": "string - exactly one of: High, Medium, Low, Unknown",
    "action_steps": ["string - one concrete step, in the order the reader should do them"],
    "draft_reply": "string - a polite, ready-to-send reply the reader can adapt",
}


# =============================================================================
# Prompt Templates
# =============================================================================


DOCUMENT_ANALYSIS_PROMPT = PromptTemplate(
    id="document_analysis_v1",
    version="1.0.0",
    description="Summarize, triage and draft a reply for one document image.",
    system_instruction=CASEWORKER_SYSTEM,
    user_prompt_template=textwrap.dedent(
        """
        Analyze the attached document. Identify the core message, how urgent
        it is, the actions the reader must take, and write a draft reply.

        Urgency guide:
        - High: a deadline within about two weeks, or a penalty, cut-off or
          legal consequence for not acting.
        - Medium: a response or action is needed but not immediately.
        - Low: informational, or a routine action with no real deadline.
        - Unknown: the document is unreadable or not an official document.

        ## Output Schema
        $output_schema

        Respond with JSON only.
        """
    ).strip(),
    output_schema=DOCUMENT_ANALYSIS_SCHEMA,
)


def render_output_schema(schema: dict[str, Any]) -> str:
    """Convert schema dict to pretty JSON string for prompt."""
    return json.dumps(schema, indent=2)
