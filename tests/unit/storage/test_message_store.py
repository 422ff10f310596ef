"""Tests for InMemoryMessageStore and Catalog."""

from __future__ import annotations

import pytest

from pydantic import ValidationError

from conftest import make_persona

from parley.core.exceptions import (
    CatalogLookupError,
    ConversationNotFoundError,
    MessageImmutableError,
    MessageNotFoundError,
)
from parley.models.chat_models import Conversation, Message, MessageStatus, Participant
from parley.storage.catalog import Catalog
from parley.storage.message_store import InMemoryMessageStore


def streaming_reply(conversation_id: str = "c1") -> Message:
    return Message(
        conversation_id=conversation_id,
        role="assistant",
        participant_id="p-alpha",
        is_streaming=True,
        status=MessageStatus.STREAMING,
    )


class TestMessages:
    """Tests for message CRUD."""

    @pytest.mark.asyncio
    async def test_add_and_get_returns_copies(self, store: InMemoryMessageStore) -> None:
        """Test that callers cannot mutate stored state through returned objects."""
        message = await store.add_message(Message(conversation_id="c1", role="user", content="hi"))

        fetched = await store.get_message(message.id)
        fetched.content = "changed"

        assert (await store.get_message(message.id)).content == "hi"

    @pytest.mark.asyncio
    async def test_get_missing_raises(self, store: InMemoryMessageStore) -> None:
        """Test that unknown ids raise MessageNotFoundError."""
        with pytest.raises(MessageNotFoundError):
            await store.get_message("nope")

    @pytest.mark.asyncio
    async def test_update_streaming_message(self, store: InMemoryMessageStore) -> None:
        """Test that streaming assistant messages accept patches."""
        message = await store.add_message(streaming_reply())

        updated = await store.update_message(message.id, {"content": "Hello", "reasoning_content": "hmm"})

        assert updated.content == "Hello"
        assert updated.reasoning_content == "hmm"

    @pytest.mark.asyncio
    async def test_identity_fields_ignored(self, store: InMemoryMessageStore) -> None:
        """Test that id, role and owner cannot be patched."""
        message = await store.add_message(streaming_reply())

        updated = await store.update_message(message.id, {"role": "user", "participant_id": "other", "content": "x"})

        assert updated.role == "assistant"
        assert updated.participant_id == "p-alpha"
        assert updated.content == "x"

    @pytest.mark.asyncio
    async def test_finalized_assistant_message_is_immutable(self, store: InMemoryMessageStore) -> None:
        """Test that once status leaves streaming, further patches are rejected."""
        message = await store.add_message(streaming_reply())
        await store.update_message(message.id, {"is_streaming": False, "status": MessageStatus.SUCCESS})

        with pytest.raises(MessageImmutableError):
            await store.update_message(message.id, {"content": "late frame"})

    @pytest.mark.asyncio
    async def test_user_messages_remain_editable(self, store: InMemoryMessageStore) -> None:
        """Test that user messages can be edited after the fact."""
        message = await store.add_message(Message(conversation_id="c1", role="user", content="typo"))

        updated = await store.update_message(message.id, {"content": "fixed"})

        assert updated.content == "fixed"

    @pytest.mark.asyncio
    async def test_invalid_patch_leaves_record_untouched(self, store: InMemoryMessageStore) -> None:
        """Test that a patch failing validation does not corrupt the stored message."""
        message = await store.add_message(streaming_reply())

        with pytest.raises(ValidationError):
            await store.update_message(message.id, {"status": "unknown"})

        assert (await store.get_message(message.id)).status == MessageStatus.STREAMING

    @pytest.mark.asyncio
    async def test_list_in_order_with_limit(self, store: InMemoryMessageStore) -> None:
        """Test chronological listing scoped to a conversation."""
        ids = []
        for index in range(5):
            message = await store.add_message(Message(conversation_id="c1", role="user", content=str(index)))
            ids.append(message.id)
        await store.add_message(Message(conversation_id="c2", role="user", content="other"))

        everything = await store.list_messages("c1")
        recent = await store.list_messages("c1", limit=2)

        assert [m.id for m in everything] == ids
        assert [m.content for m in recent] == ["3", "4"]
        assert await store.list_messages("c1", limit=0) == []

    @pytest.mark.asyncio
    async def test_delete_ignores_unknown(self, store: InMemoryMessageStore) -> None:
        """Test that deleting unknown ids is not an error."""
        message = await store.add_message(Message(conversation_id="c1", role="user"))

        await store.delete_messages([message.id, "missing"])

        assert await store.list_messages("c1") == []


class TestConversations:
    """Tests for conversation storage."""

    @pytest.mark.asyncio
    async def test_update_conversation(self, store: InMemoryMessageStore) -> None:
        """Test that patches merge and the id stays fixed."""
        await store.add_conversation(Conversation(id="c1"))

        updated = await store.update_conversation("c1", {"title": "Plans", "id": "hijack"})

        assert updated.id == "c1"
        assert updated.title == "Plans"

    @pytest.mark.asyncio
    async def test_missing_conversation(self, store: InMemoryMessageStore) -> None:
        """Test that unknown conversations raise."""
        with pytest.raises(ConversationNotFoundError):
            await store.get_conversation("nope")
        with pytest.raises(ConversationNotFoundError):
            await store.update_conversation("nope", {})


class TestCatalog:
    """Tests for Catalog lookups."""

    def test_lookup_errors(self, catalog: Catalog) -> None:
        """Test that unknown models and providers raise CatalogLookupError."""
        with pytest.raises(CatalogLookupError):
            catalog.get_model("missing")
        with pytest.raises(LookupError):
            catalog.get_provider("missing")

    def test_participant_label(self, catalog: Catalog) -> None:
        """Test persona name, then model label, then raw model id."""
        persona = catalog.add_persona(make_persona("Ada"))

        assert catalog.participant_label(Participant(model_id="m-alpha", persona_id=persona.id)) == "Ada"
        assert catalog.participant_label(Participant(model_id="m-beta")) == "Beta"
        assert catalog.participant_label(Participant(model_id="unknown-model")) == "unknown-model"

    def test_get_persona_none(self, catalog: Catalog) -> None:
        """Test that a missing persona id yields None."""
        assert catalog.get_persona(None) is None
        assert catalog.get_persona("nobody") is None
