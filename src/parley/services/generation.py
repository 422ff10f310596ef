"""
Generation orchestration.

Drives one participant's turn through its phases:

    PENDING -> STREAMING -> (TOOL_EXECUTING -> STREAMING)* -> FINALIZED | ERRORED | CANCELLED

While streaming, deltas accumulate in memory. A frame throttle publishes at
most one StreamingState snapshot per frame interval and queues the same
snapshot on the batch writer, so storage sees coalesced writes instead of one
per token. Tool calls found at the end of a stream are executed, persisted
and fed back for another round until the model stops calling tools or the
round limit is reached.

Cancellation never fails a turn: the message is finalized with whatever was
received so far and status ``success``.
"""

from __future__ import annotations

import asyncio
import time
import uuid

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from parley.core.cancellation import CancellationToken
from parley.core.constants import (
    AUTO_TITLE_LENGTH,
    DEFAULT_CONVERSATION_TITLE,
    LAST_MESSAGE_PREVIEW_LENGTH,
    get_settings,
)
from parley.core.exceptions import CatalogLookupError, OperationCancelledError
from parley.integrations.llm_client import ChatCompletionRequest, ChatCompletionsClient
from parley.integrations.sse_consumer import ThinkTagScanner
from parley.models.chat_models import (
    Conversation,
    Message,
    MessageStatus,
    ModelRef,
    Participant,
    Persona,
    Provider,
    StreamingState,
    TokenUsage,
    ToolCall,
    ToolResult,
    utc_now,
)
from parley.models.stream_models import StreamDelta, UsageDelta
from parley.services.context_compression import ContextCompressor, estimate_tokens
from parley.services.message_builder import build_api_messages, build_system_prompt, is_history_message
from parley.services.tool_executor import ToolExecutor
from parley.storage.batch_writer import BatchWriter
from parley.storage.catalog import Catalog
from parley.storage.message_store import MessageStore
from parley.utils.logger import logger
from parley.utils.turn_context import turn_context


class TurnPhase(str, Enum):
    """Phase of one participant turn."""

    PENDING = "pending"
    STREAMING = "streaming"
    TOOL_EXECUTING = "tool_executing"
    FINALIZED = "finalized"
    ERRORED = "errored"
    CANCELLED = "cancelled"


PhaseObserver = Callable[[str, TurnPhase], None]
StreamObserver = Callable[[str, StreamingState | None], None]


@dataclass
class GenerationContext:
    """Per-conversation generation state.

    One context exists per conversation. It carries the cancellation token of
    the send in flight, the live streaming projection and the auto-discuss
    counters.
    """

    conversation_id: str
    token: CancellationToken = field(default_factory=CancellationToken)
    streaming_state: StreamingState | None = None
    streaming_message_ids: set[str] = field(default_factory=set)
    task: asyncio.Task[Any] | None = None
    auto_discuss_total: int = 0
    auto_discuss_remaining: int = 0

    @property
    def is_generating(self) -> bool:
        return self.task is not None and not self.task.done()

    def reset_token(self) -> CancellationToken:
        self.token = CancellationToken()
        return self.token


@dataclass
class SendPlan:
    """History decisions shared by every participant of one send.

    Attributes:
        user_message: Message that triggered the send (None for regenerate/continue)
        summary: Text replacing ``excluded_ids`` in every request
        excluded_ids: Messages covered by the summary
    """

    user_message: Message | None = None
    summary: str | None = None
    excluded_ids: set[str] = field(default_factory=set)


# ============================================================================
# Delta accumulation
# ============================================================================


@dataclass
class ToolCallFragment:
    id: str = ""
    name: str = ""
    arguments: str = ""


class DeltaAccumulator:
    """Accumulates a turn's content, reasoning, tool-call fragments and usage.

    Content and reasoning grow across tool rounds. Tool-call fragments are
    keyed by their stream index and are taken once per round.
    """

    def __init__(self) -> None:
        self.content = ""
        self.reasoning = ""
        self.usage: UsageDelta | None = None
        self._scanner = ThinkTagScanner()
        self._fragments: dict[int, ToolCallFragment] = {}
        self._round_start = 0

    def apply(self, delta: StreamDelta) -> None:
        if delta.reasoning_content:
            self.reasoning += delta.reasoning_content
        if delta.content:
            content, reasoning = self._scanner.feed(delta.content)
            self.content += content
            self.reasoning += reasoning
        for fragment_delta in delta.tool_calls:
            fragment = self._fragments.setdefault(fragment_delta.index, ToolCallFragment())
            if fragment_delta.id:
                fragment.id = fragment_delta.id
            if fragment_delta.name:
                fragment.name += fragment_delta.name
            if fragment_delta.arguments:
                fragment.arguments += fragment_delta.arguments
        if delta.usage is not None:
            self.usage = delta.usage

    def end_stream(self) -> None:
        """Release text the think-tag scanner held back at the end of a stream."""
        content, reasoning = self._scanner.finish()
        self.content += content
        self.reasoning += reasoning

    @property
    def round_content(self) -> str:
        """Content produced since the last take_tool_calls()."""
        return self.content[self._round_start :]

    def take_tool_calls(self) -> list[ToolCall]:
        """Return the round's complete tool calls in index order and start a new round."""
        calls: list[ToolCall] = []
        for index in sorted(self._fragments):
            fragment = self._fragments[index]
            if not fragment.name:
                logger.debug(f"Dropping incomplete tool call fragment at index {index}")
                continue
            call_id = fragment.id or f"call_{uuid.uuid4().hex[:24]}"
            calls.append(ToolCall(id=call_id, name=fragment.name, arguments=fragment.arguments))
        self._fragments.clear()
        self._round_start = len(self.content)
        return calls

    @property
    def token_usage(self) -> TokenUsage | None:
        if self.usage is None:
            return None
        return TokenUsage(input_tokens=self.usage.prompt_tokens, output_tokens=self.usage.completion_tokens)


class FrameThrottle:
    """Dirty-flag scheduler emitting at most one frame per interval.

    mark_dirty() schedules a frame if none is pending; flush() emits the
    pending state immediately.
    """

    def __init__(self, interval: float, emit: Callable[[], None]):
        self.interval = interval
        self._emit = emit
        self._handle: asyncio.TimerHandle | None = None

    @property
    def is_dirty(self) -> bool:
        return self._handle is not None

    def mark_dirty(self) -> None:
        if self._handle is None:
            self._handle = asyncio.get_running_loop().call_later(self.interval, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self._emit()

    def flush(self) -> None:
        self.cancel()
        self._emit()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


def tool_call_payload(call: ToolCall) -> dict[str, Any]:
    """OpenAI ``tool_calls`` entry for a request message."""
    return {"id": call.id, "type": "function", "function": {"name": call.name, "arguments": call.arguments}}


# ============================================================================
# Orchestrator
# ============================================================================


@dataclass
class _Turn:
    """Mutable state of the turn in flight."""

    context: GenerationContext
    conversation: Conversation
    participant: Participant
    persona: Persona | None
    model: ModelRef
    provider: Provider
    message_id: str
    plan: SendPlan
    accumulator: DeltaAccumulator = field(default_factory=DeltaAccumulator)
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    rounds: int = 0
    started_at: float = field(default_factory=time.monotonic)
    stream_started_at: float | None = None

    @property
    def reasoning_duration(self) -> float | None:
        """Seconds from the first upstream stream opening, when the turn produced reasoning."""
        if not self.accumulator.reasoning or self.stream_started_at is None:
            return None
        return time.monotonic() - self.stream_started_at


class GenerationOrchestrator:
    """Runs participant turns against the upstream endpoint and tool servers."""

    def __init__(
        self,
        store: MessageStore,
        catalog: Catalog,
        llm_client: ChatCompletionsClient,
        tool_executor: ToolExecutor,
        batch_writer: BatchWriter,
        compressor: ContextCompressor | None = None,
        on_phase: PhaseObserver | None = None,
        on_stream: StreamObserver | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            store: Message and conversation storage
            catalog: Lookup for models, providers and personas
            llm_client: Chat completions client
            tool_executor: Routes tool calls to local tools and MCP servers
            batch_writer: Coalesces streaming patches to the store
            compressor: Summarizes long histories (None disables compression)
            on_phase: Called with (message_id, phase) on every phase transition
            on_stream: Called with (conversation_id, state) for every frame; state is None when a turn ends
        """
        self.store = store
        self.catalog = catalog
        self.llm_client = llm_client
        self.tool_executor = tool_executor
        self.batch_writer = batch_writer
        self.compressor = compressor
        self.on_phase = on_phase
        self.on_stream = on_stream

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def _load_history(self, conversation_id: str) -> list[Message]:
        limit = get_settings().max_history_messages
        messages = await self.store.list_messages(conversation_id, limit=limit)
        return [message for message in messages if is_history_message(message)]

    async def plan_send(
        self,
        context: GenerationContext,
        conversation: Conversation,
        participants: list[Participant],
        user_message: Message | None = None,
    ) -> SendPlan:
        """Decide once per send which history is replaced by a summary.

        Applies the conversation's manual summary, then compresses what is
        left if it outgrows the threshold. The first participant's model
        writes the summary.
        """
        plan = SendPlan(user_message=user_message)
        history = await self._load_history(conversation.id)

        if conversation.summary:
            plan.summary = conversation.summary
            ids = [message.id for message in history]
            if conversation.summary_message_id in ids:
                cut = ids.index(conversation.summary_message_id) + 1
                plan.excluded_ids.update(ids[:cut])
                history = history[cut:]

        settings = get_settings()
        if self.compressor is None or not settings.context_compression_enabled or not participants:
            return plan

        first = participants[0]
        try:
            model = self.catalog.get_model(first.model_id)
            provider = self.catalog.get_provider(model.provider_id)
        except CatalogLookupError as e:
            logger.warning(f"Skipping context compression: {e}")
            return plan

        system_prompt = build_system_prompt(conversation, first, self.catalog) or ""
        labels = {p.id: self.catalog.participant_label(p) for p in conversation.participants}
        result = await context.token.run(
            self.compressor.compress_if_needed(
                history,
                provider,
                model.model_id,
                labels=labels,
                reserved_tokens=estimate_tokens(system_prompt) + estimate_tokens(plan.summary),
            )
        )
        if result.compressed:
            plan.excluded_ids.update(result.compressed_ids)
            plan.summary = f"{plan.summary}\n\n{result.summary}" if plan.summary else result.summary
        return plan

    async def _build_request_messages(self, turn: _Turn) -> list[dict[str, Any]]:
        history = [m for m in await self._load_history(turn.conversation.id) if m.id not in turn.plan.excluded_ids]
        return build_api_messages(
            history, turn.conversation, turn.participant, self.catalog, summary=turn.plan.summary
        )

    # ------------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------------

    def _set_phase(self, message_id: str, phase: TurnPhase) -> None:
        logger.debug(f"Message {message_id} -> {phase.value}")
        if self.on_phase is not None:
            self.on_phase(message_id, phase)

    def _publish_frame(self, turn: _Turn) -> None:
        state = StreamingState(
            message_id=turn.message_id,
            content=turn.accumulator.content,
            reasoning=turn.accumulator.reasoning,
        )
        turn.context.streaming_state = state
        if self.on_stream is not None:
            self.on_stream(turn.conversation.id, state)
        self.batch_writer.queue_patch(
            turn.message_id,
            {"content": state.content, "reasoning_content": state.reasoning or None},
        )

    def _clear_stream(self, turn: _Turn) -> None:
        context = turn.context
        context.streaming_message_ids.discard(turn.message_id)
        if context.streaming_state is not None and context.streaming_state.message_id == turn.message_id:
            context.streaming_state = None
            if self.on_stream is not None:
                self.on_stream(turn.conversation.id, None)

    async def generate_for_participant(
        self,
        context: GenerationContext,
        conversation: Conversation,
        participant: Participant,
        plan: SendPlan | None = None,
    ) -> str:
        """Generate one participant's reply.

        Returns:
            The reply content (partial when cancelled, empty on error or when
            the participant's model cannot be resolved)
        """
        try:
            model = self.catalog.get_model(participant.model_id)
            provider = self.catalog.get_provider(model.provider_id)
        except CatalogLookupError as e:
            logger.warning(f"Skipping participant {participant.id}: {e}")
            return ""

        message = Message(
            conversation_id=conversation.id,
            role="assistant",
            participant_id=participant.id,
            is_streaming=True,
            status=MessageStatus.STREAMING,
        )
        await self.store.add_message(message)
        context.streaming_message_ids.add(message.id)

        turn = _Turn(
            context=context,
            conversation=conversation,
            participant=participant,
            persona=self.catalog.get_persona(participant.persona_id),
            model=model,
            provider=provider,
            message_id=message.id,
            plan=plan or SendPlan(),
        )
        throttle = FrameThrottle(get_settings().frame_interval, lambda: self._publish_frame(turn))
        self._set_phase(message.id, TurnPhase.PENDING)

        with turn_context(conversation.id, participant_id=participant.id, message_id=message.id):
            try:
                await self._run_turn(turn, throttle)
                return turn.accumulator.content
            except OperationCancelledError:
                throttle.cancel()
                await self._finalize_cancelled(turn)
                return turn.accumulator.content
            except Exception as e:
                throttle.cancel()
                await self._finalize_error(turn, e)
                return ""
            finally:
                throttle.cancel()
                self._clear_stream(turn)

    async def _run_turn(self, turn: _Turn, throttle: FrameThrottle) -> None:
        token = turn.context.token
        persona = turn.persona

        tools = await token.run(self.tool_executor.tool_definitions(persona))
        messages = await self._build_request_messages(turn)
        request = ChatCompletionRequest(
            model=turn.model.model_id,
            messages=list(messages),
            temperature=persona.temperature if persona else None,
            top_p=persona.top_p if persona else None,
            reasoning_effort=persona.reasoning_effort if persona else None,
            tools=tools or None,
        )
        max_rounds = (persona.max_tool_rounds if persona else None) or get_settings().max_tool_rounds

        await self._stream_round(turn, request, throttle)

        round_text = turn.accumulator.round_content
        calls = turn.accumulator.take_tool_calls()
        while calls and turn.rounds < max_rounds:
            token.check()
            turn.rounds += 1
            self._set_phase(turn.message_id, TurnPhase.TOOL_EXECUTING)
            results = await self._execute_tools(turn, calls)

            messages.append(
                {
                    "role": "assistant",
                    "content": round_text or None,
                    "tool_calls": [tool_call_payload(call) for call in calls],
                }
            )
            messages.extend({"role": "tool", "tool_call_id": r.tool_call_id, "content": r.content} for r in results)

            token.check()
            await self._stream_round(turn, request.model_copy(update={"messages": list(messages)}), throttle)
            round_text = turn.accumulator.round_content
            calls = turn.accumulator.take_tool_calls()

        if calls:
            logger.warning(f"Tool round limit ({max_rounds}) reached, finalizing with accumulated content")

        await self._finalize_success(turn)

    async def _stream_round(self, turn: _Turn, request: ChatCompletionRequest, throttle: FrameThrottle) -> None:
        self._set_phase(turn.message_id, TurnPhase.STREAMING)
        if turn.stream_started_at is None:
            turn.stream_started_at = time.monotonic()
        accumulator = turn.accumulator

        async def consume() -> None:
            async for delta in self.llm_client.stream_chat(turn.provider, request):
                accumulator.apply(delta)
                throttle.mark_dirty()

        await turn.context.token.run(consume())
        accumulator.end_stream()
        throttle.flush()

    async def _execute_tools(self, turn: _Turn, calls: list[ToolCall]) -> list[ToolResult]:
        accumulator = turn.accumulator
        turn.tool_calls.extend(calls)

        # Queued frames must not land after the direct write
        await self.batch_writer.cancel(turn.message_id)
        await self.store.update_message(
            turn.message_id,
            {
                "content": accumulator.content,
                "reasoning_content": accumulator.reasoning or None,
                "tool_calls": [call.model_dump() for call in turn.tool_calls],
            },
        )

        results: list[ToolResult] = []
        for call in calls:
            content = await turn.context.token.run(self.tool_executor.execute(call, turn.persona))
            results.append(ToolResult(tool_call_id=call.id, content=content))
        turn.tool_results.extend(results)

        await self.store.update_message(
            turn.message_id, {"tool_results": [result.model_dump() for result in turn.tool_results]}
        )
        return results

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def _finalize_success(self, turn: _Turn) -> None:
        accumulator = turn.accumulator
        usage = accumulator.token_usage
        await self.batch_writer.cancel(turn.message_id)
        await self.store.update_message(
            turn.message_id,
            {
                "content": accumulator.content,
                "reasoning_content": accumulator.reasoning or None,
                "reasoning_duration": turn.reasoning_duration,
                "is_streaming": False,
                "status": MessageStatus.SUCCESS,
                "token_usage": usage.model_dump() if usage else None,
            },
        )
        await self._update_conversation(turn)
        self._set_phase(turn.message_id, TurnPhase.FINALIZED)
        logger.log_turn(
            participant=self.catalog.participant_label(turn.participant),
            status="success",
            response=accumulator.content,
            rounds=turn.rounds,
            tool_calls=len(turn.tool_calls),
            duration_ms=(time.monotonic() - turn.started_at) * 1000,
            tokens_used=usage.total_tokens if usage else None,
        )

    async def _finalize_cancelled(self, turn: _Turn) -> None:
        accumulator = turn.accumulator
        try:
            await self.batch_writer.cancel(turn.message_id)
            await self.store.update_message(
                turn.message_id,
                {
                    "content": accumulator.content,
                    "reasoning_content": accumulator.reasoning or None,
                    "reasoning_duration": turn.reasoning_duration,
                    "is_streaming": False,
                    "status": MessageStatus.SUCCESS,
                },
            )
        except Exception as e:
            logger.error(f"Failed to finalize cancelled message {turn.message_id}: {e}", exc_info=True)
        self._set_phase(turn.message_id, TurnPhase.CANCELLED)
        logger.info(f"Generation stopped for {turn.message_id} after {len(accumulator.content)} chars")

    async def _finalize_error(self, turn: _Turn, error: Exception) -> None:
        message = str(error) or type(error).__name__
        logger.error(f"Generation failed for {turn.message_id}: {message}", exc_info=True)
        accumulator = turn.accumulator
        try:
            await self.batch_writer.cancel(turn.message_id)
            await self.store.update_message(
                turn.message_id,
                {
                    "content": accumulator.content,
                    "reasoning_content": accumulator.reasoning or None,
                    "is_streaming": False,
                    "status": MessageStatus.ERROR,
                    "error_message": message,
                },
            )
        except Exception as e:
            logger.error(f"Failed to record error on message {turn.message_id}: {e}")
        self._set_phase(turn.message_id, TurnPhase.ERRORED)
        logger.log_turn(
            participant=self.catalog.participant_label(turn.participant),
            status="error",
            response="",
            rounds=turn.rounds,
            tool_calls=len(turn.tool_calls),
            duration_ms=(time.monotonic() - turn.started_at) * 1000,
        )

    async def _update_conversation(self, turn: _Turn) -> None:
        user_message = turn.plan.user_message
        preview = turn.accumulator.content or (user_message.content if user_message else "")
        patch: dict[str, Any] = {
            "last_message": preview[:LAST_MESSAGE_PREVIEW_LENGTH],
            "last_message_at": utc_now(),
        }

        conversation = await self.store.get_conversation(turn.conversation.id)
        if conversation.title == DEFAULT_CONVERSATION_TITLE:
            history = await self.store.list_messages(conversation.id)
            first_user = next((m for m in history if m.role == "user" and m.content.strip()), None)
            if first_user is not None:
                patch["title"] = first_user.content.strip()[:AUTO_TITLE_LENGTH]

        await self.store.update_conversation(conversation.id, patch)
