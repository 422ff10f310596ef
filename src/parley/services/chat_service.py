"""
Chat Service - turn controller for conversations.

Owns one GenerationContext per conversation and runs every send as a single
task holding that context's cancellation token. Participants answer
sequentially; stop_generation fires the token so the participant in flight
finalizes with its partial reply and no further participant starts.
"""

from __future__ import annotations

import asyncio

from collections.abc import Coroutine
from typing import Any

from parley.core.constants import AUTO_DISCUSS_CONTINUE_PROMPT, LAST_MESSAGE_PREVIEW_LENGTH
from parley.core.exceptions import GenerationInProgressError, OperationCancelledError
from parley.integrations.llm_client import ChatCompletionsClient
from parley.integrations.mcp_manager import McpConnectionManager, get_mcp_manager
from parley.models.chat_models import Conversation, Message, Participant, StreamingState
from parley.services.context_compression import ContextCompressor
from parley.services.generation import (
    GenerationContext,
    GenerationOrchestrator,
    PhaseObserver,
    StreamObserver,
)
from parley.services.mentions import extract_mentioned_participant_ids
from parley.services.message_builder import is_history_message, resolve_target_participants
from parley.services.tool_executor import ToolExecutor
from parley.storage.batch_writer import BatchWriter
from parley.storage.catalog import Catalog
from parley.storage.message_store import InMemoryMessageStore, MessageStore
from parley.tools.builtin import BuiltinToolRegistry
from parley.utils.logger import logger


class ChatService:
    """Entry point for sending messages and controlling generation."""

    def __init__(
        self,
        store: MessageStore | None = None,
        catalog: Catalog | None = None,
        llm_client: ChatCompletionsClient | None = None,
        mcp_manager: McpConnectionManager | None = None,
        builtin_tools: BuiltinToolRegistry | None = None,
        batch_writer: BatchWriter | None = None,
        compressor: ContextCompressor | None = None,
        on_phase: PhaseObserver | None = None,
        on_stream: StreamObserver | None = None,
    ):
        """Initialize the service.

        Every collaborator is optional; defaults are an in-memory store, an
        empty catalog, a fresh completions client, the global MCP manager and
        the default built-in tools.
        """
        self.store: MessageStore = store if store is not None else InMemoryMessageStore()
        self.catalog = catalog if catalog is not None else Catalog()
        self.llm_client = llm_client if llm_client is not None else ChatCompletionsClient()
        self.mcp_manager = mcp_manager if mcp_manager is not None else get_mcp_manager()
        self.batch_writer = batch_writer if batch_writer is not None else BatchWriter(self.store.update_message)
        self.tool_executor = ToolExecutor(
            self.catalog, builtin_tools if builtin_tools is not None else BuiltinToolRegistry(), self.mcp_manager
        )
        self.compressor = compressor if compressor is not None else ContextCompressor(self.llm_client)
        self.orchestrator = GenerationOrchestrator(
            store=self.store,
            catalog=self.catalog,
            llm_client=self.llm_client,
            tool_executor=self.tool_executor,
            batch_writer=self.batch_writer,
            compressor=self.compressor,
            on_phase=on_phase,
            on_stream=on_stream,
        )
        self._contexts: dict[str, GenerationContext] = {}

    # ------------------------------------------------------------------
    # Context
    # ------------------------------------------------------------------

    def get_context(self, conversation_id: str) -> GenerationContext:
        context = self._contexts.get(conversation_id)
        if context is None:
            context = GenerationContext(conversation_id=conversation_id)
            self._contexts[conversation_id] = context
        return context

    def is_generating(self, conversation_id: str) -> bool:
        context = self._contexts.get(conversation_id)
        return bool(context and context.is_generating)

    def streaming_state(self, conversation_id: str) -> StreamingState | None:
        context = self._contexts.get(conversation_id)
        return context.streaming_state if context else None

    async def _run_exclusive(self, conversation_id: str, work: Coroutine[Any, Any, list[str]]) -> list[str]:
        """Run ``work`` as the conversation's only generation task."""
        context = self.get_context(conversation_id)
        if context.is_generating:
            work.close()
            raise GenerationInProgressError(f"Conversation {conversation_id} is already generating")

        context.reset_token()
        task = asyncio.create_task(work)
        context.task = task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # Caller went away: stop cleanly instead of killing the turn mid-write
            await context.token.cancel("caller cancelled")
            raise

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def create_conversation(self, participants: list[Participant], title: str | None = None) -> Conversation:
        conversation = Conversation(participants=participants)
        if title:
            conversation.title = title
        return await self.store.add_conversation(conversation)

    async def clear_conversation(self, conversation_id: str) -> None:
        """Delete every message and reset the conversation preview and summary."""
        if self.is_generating(conversation_id):
            raise GenerationInProgressError(f"Conversation {conversation_id} is generating")
        messages = await self.store.list_messages(conversation_id)
        await self.store.delete_messages([m.id for m in messages])
        await self.store.update_conversation(
            conversation_id,
            {"last_message": None, "last_message_at": None, "summary": None, "summary_message_id": None},
        )

    async def compress_conversation(self, conversation_id: str) -> str:
        """Summarize older history now and store it as the conversation summary.

        Raises:
            ValueError: If the conversation has no participants or too few messages
        """
        conversation = await self.store.get_conversation(conversation_id)
        if not conversation.participants:
            raise ValueError("Conversation has no participants")
        model = self.catalog.get_model(conversation.participants[0].model_id)
        provider = self.catalog.get_provider(model.provider_id)

        history = [m for m in await self.store.list_messages(conversation_id) if is_history_message(m)]
        labels = {p.id: self.catalog.participant_label(p) for p in conversation.participants}
        summary, covered_id = await self.compressor.summarize_history(history, provider, model.model_id, labels)
        await self.store.update_conversation(conversation_id, {"summary": summary, "summary_message_id": covered_id})
        logger.info(f"Stored manual summary for {conversation_id} covering up to {covered_id}")
        return summary

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_message(self, conversation_id: str, text: str, images: list[str] | None = None) -> list[str]:
        """Add a user message and let the target participants answer.

        In group conversations, ``@name`` mentions narrow the responders to
        the mentioned participants.

        Returns:
            Reply content per participant that answered, in order

        Raises:
            GenerationInProgressError: If the conversation is already generating
        """
        return await self._run_exclusive(conversation_id, self._send(conversation_id, text, images or []))

    async def _add_user_message(self, conversation_id: str, text: str, images: list[str]) -> Message:
        message = Message(conversation_id=conversation_id, role="user", content=text, images=images)
        await self.store.add_message(message)
        await self.store.update_conversation(
            conversation_id,
            {"last_message": text[:LAST_MESSAGE_PREVIEW_LENGTH], "last_message_at": message.created_at},
        )
        return message

    def _targets_for(self, conversation: Conversation, text: str) -> list[Participant]:
        mentioned: list[str] = []
        if conversation.is_group:
            labels = {p.id: self.catalog.participant_label(p) for p in conversation.participants}
            mentioned = extract_mentioned_participant_ids(text, labels)
        return resolve_target_participants(conversation, mentioned)

    async def _send(self, conversation_id: str, text: str, images: list[str]) -> list[str]:
        conversation = await self.store.get_conversation(conversation_id)
        user_message = await self._add_user_message(conversation_id, text, images)
        targets = self._targets_for(conversation, text)
        return await self._generate(self.get_context(conversation_id), conversation, targets, user_message)

    async def _generate(
        self,
        context: GenerationContext,
        conversation: Conversation,
        targets: list[Participant],
        user_message: Message | None,
    ) -> list[str]:
        try:
            plan = await self.orchestrator.plan_send(context, conversation, targets, user_message)
        except OperationCancelledError:
            logger.info(f"Send to {conversation.id} stopped before generation started")
            return []

        replies: list[str] = []
        for participant in targets:
            if context.token.is_cancelled:
                break
            # Refresh so a title set by the previous participant is seen
            conversation = await self.store.get_conversation(conversation.id)
            replies.append(await self.orchestrator.generate_for_participant(context, conversation, participant, plan))
        return replies

    async def regenerate_message(self, message_id: str) -> list[str]:
        """Replace an assistant reply with a fresh one from the same participant.

        Raises:
            ValueError: If the message is not an assistant reply to a user message
            GenerationInProgressError: If the conversation is already generating
        """
        message = await self.store.get_message(message_id)
        if message.role != "assistant":
            raise ValueError(f"Only assistant messages can be regenerated: {message_id}")
        return await self._run_exclusive(message.conversation_id, self._regenerate(message))

    async def _regenerate(self, message: Message) -> list[str]:
        conversation = await self.store.get_conversation(message.conversation_id)
        history = await self.store.list_messages(conversation.id)
        index = next(i for i, m in enumerate(history) if m.id == message.id)
        previous_user = next((m for m in reversed(history[:index]) if m.role == "user"), None)
        if previous_user is None:
            raise ValueError(f"No user message precedes {message.id}")

        await self.store.delete_messages([message.id])

        targets = [p for p in conversation.participants if p.id == message.participant_id]
        if not targets:
            targets = self._targets_for(conversation, previous_user.content)
        return await self._generate(self.get_context(conversation.id), conversation, targets, previous_user)

    async def edit_message(self, message_id: str, content: str) -> list[str]:
        """Rewrite a user message, drop everything after it and generate again.

        Raises:
            ValueError: If the message is not a user message
            GenerationInProgressError: If the conversation is already generating
        """
        message = await self.store.get_message(message_id)
        if message.role != "user":
            raise ValueError(f"Only user messages can be edited: {message_id}")
        return await self._run_exclusive(message.conversation_id, self._edit(message, content))

    async def _edit(self, message: Message, content: str) -> list[str]:
        conversation = await self.store.get_conversation(message.conversation_id)
        history = await self.store.list_messages(conversation.id)
        index = next(i for i, m in enumerate(history) if m.id == message.id)

        edited = await self.store.update_message(message.id, {"content": content})
        await self.store.delete_messages([m.id for m in history[index + 1 :]])

        targets = self._targets_for(conversation, content)
        return await self._generate(self.get_context(conversation.id), conversation, targets, edited)

    async def stop_generation(self, conversation_id: str) -> None:
        """Stop the conversation's generation and any auto-discussion.

        Returns once the in-flight participant has finalized its partial reply.
        """
        context = self._contexts.get(conversation_id)
        if context is None or not context.is_generating:
            return
        context.auto_discuss_remaining = 0
        await context.token.cancel("stopped by user")
        task = context.task
        if task is not None:
            await asyncio.wait({task})

    # ------------------------------------------------------------------
    # Auto-discuss
    # ------------------------------------------------------------------

    async def start_auto_discuss(self, conversation_id: str, rounds: int, topic: str | None = None) -> list[str]:
        """Let a group's participants talk among themselves for ``rounds`` rounds.

        Round one sends ``topic`` when given; otherwise the existing
        conversation counts as round one. Every later round sends the
        synthetic continue prompt.

        Returns:
            Every reply produced, in order

        Raises:
            ValueError: If the conversation is not a group or rounds < 1
            GenerationInProgressError: If the conversation is already generating
        """
        if rounds < 1:
            raise ValueError("rounds must be at least 1")
        conversation = await self.store.get_conversation(conversation_id)
        if not conversation.is_group:
            raise ValueError("Auto-discuss needs a group conversation")
        return await self._run_exclusive(conversation_id, self._auto_discuss(conversation_id, rounds, topic))

    async def _auto_discuss(self, conversation_id: str, rounds: int, topic: str | None) -> list[str]:
        context = self.get_context(conversation_id)
        context.auto_discuss_total = rounds
        context.auto_discuss_remaining = rounds
        replies: list[str] = []
        try:
            for round_number in range(1, rounds + 1):
                if context.token.is_cancelled or context.auto_discuss_remaining <= 0:
                    break
                if round_number == 1:
                    prompt = topic.strip() if topic and topic.strip() else None
                else:
                    prompt = AUTO_DISCUSS_CONTINUE_PROMPT
                if prompt is not None:
                    logger.info(f"Auto-discuss round {round_number}/{rounds} in {conversation_id}")
                    replies.extend(await self._send(conversation_id, prompt, []))
                context.auto_discuss_remaining = min(context.auto_discuss_remaining, rounds - round_number)
        finally:
            context.auto_discuss_remaining = 0
            context.auto_discuss_total = 0
        return replies

    async def stop_auto_discuss(self, conversation_id: str) -> None:
        context = self._contexts.get(conversation_id)
        if context is not None:
            context.auto_discuss_remaining = 0
        await self.stop_generation(conversation_id)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def aclose(self) -> None:
        """Stop all generation, flush pending writes and close clients."""
        for conversation_id in list(self._contexts):
            await self.stop_generation(conversation_id)
        await self.batch_writer.close()
        await self.llm_client.aclose()
