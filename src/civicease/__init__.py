"""CivicEase: plain-language help with official documents.

Photograph a letter, form or notice and get a summary, an urgency rating,
a checklist of next steps and a draft reply, then ask follow-up questions.
Analyzed documents are kept in a local library.

Packages:
    - core: data models, images, the library store and the session controller
    - ai: the Gemini gateway, prompts and chat sessions
    - cli: the ``civicease`` command
"""

__version__ = "0.1.0"
