"""
Message storage.

The generation engine treats storage as an opaque collaborator described by
MessageStore. InMemoryMessageStore is the shipped implementation, used by the
turn controller by default and by the test suite.
"""

from __future__ import annotations

import asyncio

from typing import Any, Protocol

from parley.core.exceptions import (
    ConversationNotFoundError,
    MessageImmutableError,
    MessageNotFoundError,
)
from parley.models.chat_models import Conversation, Message, MessageStatus
from parley.utils.logger import logger

# Fields that identify a message and are never patched
IMMUTABLE_MESSAGE_FIELDS = frozenset({"id", "conversation_id", "role", "participant_id", "created_at"})


class MessageStore(Protocol):
    """Protocol for message and conversation storage implementations."""

    async def add_message(self, message: Message) -> Message:
        """Insert a new message.

        Args:
            message: Fully populated message

        Returns:
            The stored message
        """
        ...

    async def get_message(self, message_id: str) -> Message:
        """Fetch one message.

        Raises:
            MessageNotFoundError: If no message has that id
        """
        ...

    async def update_message(self, message_id: str, patch: dict[str, Any]) -> Message:
        """Apply a shallow partial update to a message.

        Raises:
            MessageNotFoundError: If no message has that id
            MessageImmutableError: If the message is a finalized assistant message
        """
        ...

    async def delete_messages(self, message_ids: list[str]) -> None:
        """Delete messages; unknown ids are ignored."""
        ...

    async def list_messages(self, conversation_id: str, limit: int | None = None) -> list[Message]:
        """Return a conversation's messages in chronological order.

        Args:
            conversation_id: Conversation identifier
            limit: Keep only the most recent ``limit`` messages (None for all)
        """
        ...

    async def add_conversation(self, conversation: Conversation) -> Conversation: ...

    async def get_conversation(self, conversation_id: str) -> Conversation:
        """Fetch one conversation.

        Raises:
            ConversationNotFoundError: If no conversation has that id
        """
        ...

    async def update_conversation(self, conversation_id: str, patch: dict[str, Any]) -> Conversation: ...


class InMemoryMessageStore:
    """Dict-backed MessageStore.

    Messages keep insertion order within a conversation. Updates validate the
    merged record so a bad patch never corrupts stored state.
    """

    def __init__(self) -> None:
        self._messages: dict[str, Message] = {}
        self._conversations: dict[str, Conversation] = {}
        self._lock = asyncio.Lock()

    async def add_message(self, message: Message) -> Message:
        async with self._lock:
            self._messages[message.id] = message.model_copy(deep=True)
        return message

    async def get_message(self, message_id: str) -> Message:
        message = self._messages.get(message_id)
        if message is None:
            raise MessageNotFoundError(f"Message not found: {message_id}")
        return message.model_copy(deep=True)

    async def update_message(self, message_id: str, patch: dict[str, Any]) -> Message:
        async with self._lock:
            current = self._messages.get(message_id)
            if current is None:
                raise MessageNotFoundError(f"Message not found: {message_id}")
            if current.role == "assistant" and current.status != MessageStatus.STREAMING:
                raise MessageImmutableError(f"Message {message_id} is finalized ({current.status.value})")

            fields = {key: value for key, value in patch.items() if key not in IMMUTABLE_MESSAGE_FIELDS}
            updated = Message.model_validate({**current.model_dump(), **fields})
            self._messages[message_id] = updated
        return updated.model_copy(deep=True)

    async def delete_messages(self, message_ids: list[str]) -> None:
        async with self._lock:
            for message_id in message_ids:
                self._messages.pop(message_id, None)
        logger.debug(f"Deleted {len(message_ids)} message(s)")

    async def list_messages(self, conversation_id: str, limit: int | None = None) -> list[Message]:
        messages = [m.model_copy(deep=True) for m in self._messages.values() if m.conversation_id == conversation_id]
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return messages

    async def add_conversation(self, conversation: Conversation) -> Conversation:
        async with self._lock:
            self._conversations[conversation.id] = conversation.model_copy(deep=True)
        return conversation

    async def get_conversation(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation not found: {conversation_id}")
        return conversation.model_copy(deep=True)

    async def update_conversation(self, conversation_id: str, patch: dict[str, Any]) -> Conversation:
        async with self._lock:
            current = self._conversations.get(conversation_id)
            if current is None:
                raise ConversationNotFoundError(f"Conversation not found: {conversation_id}")
            updated = Conversation.model_validate({**current.model_dump(), **patch, "id": current.id})
            self._conversations[conversation_id] = updated
        return updated.model_copy(deep=True)
