"""Chat Session Manager.

Holds the conversation about one document and turns each user question into
exactly two history entries: the question itself, published as soon as it is
sent, and the model's answer (or an apology if the request failed). Provider
failures never escape ``send``; they become model messages so the transcript
always reads as an alternating conversation.

Only one session is live at a time. Opening a new one retires the previous
session, and replies that arrive for a retired session are dropped.

Example:
    >>> manager = ChatSessionManager(gateway, on_update=print_history)
    >>> session = manager.open(doc.id, doc.image_data, doc.chat_history)
    >>> reply = asyncio.run(manager.send(session, "When is this due?"))
    >>> reply.text
    'The notice asks for payment by June 1.'
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from civicease.ai.client import AnalysisGateway, ChatError, CredentialError
from civicease.core.images import parse_data_url
from civicease.core.models import ChatMessage

logger = logging.getLogger(__name__)


EMPTY_REPLY_NOTICE = "I couldn't generate a response."
ERROR_NOTICE = "Sorry, I encountered an error answering that."
CREDENTIAL_HINT = "Please check your API key configuration."

HistoryCallback = Callable[[str, list[ChatMessage]], object]


class ChatBusyError(RuntimeError):
    """A message was sent while the previous one is still awaiting a reply."""


class ChatSessionClosedError(RuntimeError):
    """The session was retired and can no longer send messages."""


class ChatSession:
    """Conversation state bound to one document's image.

    Attributes:
        document_id: The document this conversation belongs to.
        image_bytes: Decoded document image, sent with the first user turn.
        mime_type: MIME type of the image.
        history: Messages so far, oldest first.
        closed: True once the session has been retired.
        in_flight: True while a request is awaiting its reply.
    """

    def __init__(
        self,
        document_id: str,
        image_bytes: bytes,
        mime_type: str,
        history: list[ChatMessage],
        on_update: HistoryCallback | None = None,
    ) -> None:
        self.document_id = document_id
        self.image_bytes = image_bytes
        self.mime_type = mime_type
        self.history = list(history)
        self.closed = False
        self.in_flight = False
        self._on_update = on_update

    def publish(self) -> None:
        if self._on_update is not None:
            self._on_update(self.document_id, list(self.history))

    def __repr__(self) -> str:
        state = "closed" if self.closed else ("busy" if self.in_flight else "open")
        return f"ChatSession({self.document_id}, {len(self.history)} messages, {state})"


class ChatSessionManager:
    """Owns the single live chat session.

    Attributes:
        gateway: Backend used to answer questions.
        session: The live session, or None.
    """

    def __init__(self, gateway: AnalysisGateway, on_update: HistoryCallback | None = None) -> None:
        self.gateway = gateway
        self.session: ChatSession | None = None
        self._on_update = on_update

    def open(
        self,
        document_id: str,
        image_data: str,
        history: list[ChatMessage],
        on_update: HistoryCallback | None = None,
    ) -> ChatSession:
        """Start a session for a document, retiring any previous one.

        Args:
            document_id: Id of the document being discussed.
            image_data: The document's ``data:`` URL.
            history: Existing conversation to continue.
            on_update: Overrides the manager's history callback.

        Raises:
            ValueError: If ``image_data`` is not a base64 data URL.
        """
        image_bytes, mime_type = parse_data_url(image_data)
        self.close()
        self.session = ChatSession(
            document_id,
            image_bytes,
            mime_type,
            history,
            on_update=on_update or self._on_update,
        )
        logger.debug(f"Opened chat for {document_id} with {len(history)} messages")
        return self.session

    def close(self) -> None:
        """Retire the live session, if any."""
        if self.session is not None:
            self.session.closed = True
            logger.debug(f"Closed chat for {self.session.document_id}")
            self.session = None

    async def send(self, session: ChatSession, user_text: str) -> ChatMessage | None:
        """Send a question and record the answer.

        Returns:
            The model message appended to the history, or None if the session
            was retired before the reply arrived.

        Raises:
            ChatSessionClosedError: If ``session`` was already retired.
            ValueError: If ``user_text`` is empty.
            ChatBusyError: If a previous message is still awaiting its reply.
        """
        if session.closed:
            raise ChatSessionClosedError(f"Chat for {session.document_id} is closed")
        text = user_text.strip()
        if not text:
            raise ValueError("Message is empty")
        if session.in_flight:
            raise ChatBusyError("A reply is still pending")

        prior = list(session.history)
        session.in_flight = True
        session.history = prior + [ChatMessage.from_user(text)]
        session.publish()

        try:
            reply = await asyncio.to_thread(
                self.gateway.chat,
                session.image_bytes,
                session.mime_type,
                prior,
                text,
            )
            reply_message = ChatMessage.from_model(reply.strip() or EMPTY_REPLY_NOTICE)
        except CredentialError as e:
            logger.warning(f"Chat failed, credentials rejected: {e}")
            reply_message = ChatMessage.from_model(f"{ERROR_NOTICE} {CREDENTIAL_HINT}")
        except ChatError as e:
            logger.warning(f"Chat failed ({e.reason}): {e}")
            reply_message = ChatMessage.from_model(ERROR_NOTICE)
        except Exception as e:
            logger.error(f"Chat failed unexpectedly: {type(e).__name__}")
            reply_message = ChatMessage.from_model(ERROR_NOTICE)
        finally:
            session.in_flight = False

        if session.closed:
            logger.info(f"Discarding reply for closed chat {session.document_id}")
            return None

        session.history = session.history + [reply_message]
        session.publish()
        return reply_message
