"""
Conversation models for Parley.
Provides Pydantic models for messages, conversations and the actors that
take part in them, plus the live streaming projection of the current turn.
"""

from __future__ import annotations

import uuid

from datetime import UTC, datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from parley.core.constants import DEFAULT_CONVERSATION_TITLE


def new_id() -> str:
    """Generate a record id."""
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(UTC)


class MessageStatus(str, Enum):
    """Lifecycle status of a message."""

    STREAMING = "streaming"
    SUCCESS = "success"
    ERROR = "error"


class ToolCall(BaseModel):
    """A model-issued request to invoke a named function."""

    id: str
    name: str
    arguments: str = ""


class ToolResult(BaseModel):
    """Execution output for one ToolCall, fed back to the model."""

    tool_call_id: str
    content: str


class TokenUsage(BaseModel):
    """Token accounting reported by the upstream endpoint."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class Message(BaseModel):
    """One chat message.

    Identity fields (id, conversation_id, role, participant_id) never change.
    The remaining fields are mutated while the message is streaming and are
    frozen once status leaves ``streaming``.
    """

    id: str = Field(default_factory=new_id)
    conversation_id: str
    role: Literal["user", "assistant"]
    participant_id: str | None = None
    content: str = ""
    images: list[str] = Field(default_factory=list, description="Image URLs or data URIs")
    reasoning_content: str | None = None
    reasoning_duration: float | None = Field(default=None, description="Seconds spent reasoning")
    tool_calls: list[ToolCall] = Field(default_factory=list)
    tool_results: list[ToolResult] = Field(default_factory=list)
    is_streaming: bool = False
    status: MessageStatus = MessageStatus.SUCCESS
    error_message: str | None = None
    token_usage: TokenUsage | None = None
    created_at: datetime = Field(default_factory=utc_now)


class Persona(BaseModel):
    """A named character bound to a participant.

    Carries the system prompt and per-persona generation and tool settings.
    """

    id: str = Field(default_factory=new_id)
    name: str
    system_prompt: str = ""
    temperature: float | None = None
    top_p: float | None = None
    reasoning_effort: str | None = None
    mcp_server_ids: list[str] = Field(default_factory=list, description="Allowed MCP servers (empty = all)")
    builtin_tool_ids: list[str] = Field(default_factory=list, description="Allowed built-in tools")
    max_tool_rounds: int | None = Field(default=None, ge=1, description="Overrides the global round limit")


class Provider(BaseModel):
    """An OpenAI-compatible endpoint."""

    id: str = Field(default_factory=new_id)
    name: str = ""
    base_url: str
    api_key: str = ""
    api_version: str | None = None
    custom_headers: dict[str, str] = Field(default_factory=dict)


class ModelRef(BaseModel):
    """A model served by a provider."""

    id: str = Field(default_factory=new_id)
    provider_id: str
    model_id: str
    display_name: str = ""

    @property
    def label(self) -> str:
        return self.display_name or self.model_id


class Participant(BaseModel):
    """One AI participant of a conversation."""

    id: str = Field(default_factory=new_id)
    model_id: str = Field(description="ModelRef id")
    persona_id: str | None = None


class Conversation(BaseModel):
    """A conversation with one or more AI participants and one human user."""

    id: str = Field(default_factory=new_id)
    title: str = DEFAULT_CONVERSATION_TITLE
    participants: list[Participant] = Field(default_factory=list)
    last_message: str | None = None
    last_message_at: datetime | None = None
    summary: str | None = Field(default=None, description="Manual summary replacing older history")
    summary_message_id: str | None = Field(default=None, description="Last message covered by summary")
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_group(self) -> bool:
        return len(self.participants) > 1


class StreamingState(BaseModel):
    """Live projection of the in-flight message, used to drive UI without storage writes."""

    message_id: str
    content: str = ""
    reasoning: str = ""

