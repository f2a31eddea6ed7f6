"""Conversation sessions for the health assistant.

A ChatSession keeps the most recent turns of one conversation in a
bounded buffer; ChatService sends turns to the chat model and records
the replies.
"""

import asyncio
import logging
from collections import OrderedDict, deque
from typing import AsyncIterator

from healthrag.models import ChatMessage
from healthrag.rag.generator import GeneratorClient

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 20
DEFAULT_MAX_SESSIONS = 1000


class ChatSession:
    """Bounded message history of one conversation.

    Oldest messages are dropped first once ``limit`` is reached.
    """

    def __init__(self, conversation_id: str, limit: int = DEFAULT_HISTORY_LIMIT):
        self.conversation_id = conversation_id
        self._messages: deque[ChatMessage] = deque(maxlen=limit)

    @property
    def messages(self) -> list[ChatMessage]:
        return list(self._messages)

    def extend(self, messages: list[ChatMessage]) -> None:
        self._messages.extend(messages)

    def clear(self) -> None:
        self._messages.clear()


class ChatService:
    """Sends user turns, with history and an optional system prompt, to the chat model.

    At most ``max_sessions`` conversations are kept; the least recently
    used one is dropped when a new conversation would exceed the cap.
    """

    def __init__(
        self,
        generator: GeneratorClient,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
    ):
        self.generator = generator
        self.history_limit = history_limit
        self.max_sessions = max_sessions
        self._sessions: OrderedDict[str, ChatSession] = OrderedDict()

    def session(self, conversation_id: str) -> ChatSession:
        if conversation_id in self._sessions:
            self._sessions.move_to_end(conversation_id)
            return self._sessions[conversation_id]
        session = ChatSession(conversation_id, self.history_limit)
        self._sessions[conversation_id] = session
        while len(self._sessions) > self.max_sessions:
            evicted, _ = self._sessions.popitem(last=False)
            logger.debug(f"Dropped chat history of conversation {evicted}")
        return session

    def get_history(self, conversation_id: str) -> list[ChatMessage]:
        existing = self._sessions.get(conversation_id)
        return existing.messages if existing else []

    def clear_history(self, conversation_id: str) -> None:
        self._sessions.pop(conversation_id, None)

    def clear_all(self) -> None:
        self._sessions.clear()

    def _conversation(
        self, conversation_id: str | None, message: ChatMessage
    ) -> list[ChatMessage]:
        history = self.get_history(conversation_id) if conversation_id else []
        return [*history, message]

    async def send(
        self,
        content: str,
        conversation_id: str | None = None,
        system_prompt: str | None = None,
        temperature: float | None = None,
    ) -> str:
        """Send one user message and return the whole assistant reply."""
        message = ChatMessage(role="user", content=content)
        answer = await asyncio.to_thread(
            self.generator.generate,
            system_prompt,
            self._conversation(conversation_id, message),
            temperature,
        )
        if conversation_id:
            self.session(conversation_id).extend(
                [message, ChatMessage(role="assistant", content=answer)]
            )
        return answer

    async def stream(
        self,
        content: str,
        conversation_id: str | None = None,
        system_prompt: str | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[str]:
        """Send one user message and yield the reply as it is generated.

        History is updated only once the stream completes.
        """
        message = ChatMessage(role="user", content=content)
        chunks = self.generator.generate_stream(
            system_prompt, self._conversation(conversation_id, message), temperature
        )
        parts: list[str] = []
        while True:
            delta = await asyncio.to_thread(next, chunks, None)
            if delta is None:
                break
            parts.append(delta)
            yield delta

        full = "".join(parts)
        if conversation_id and full:
            self.session(conversation_id).extend(
                [message, ChatMessage(role="assistant", content=full)]
            )
