"""
Streaming delta models for Parley.

Deltas are produced at the upstream token rate, so they are plain slotted
dataclasses rather than validated Pydantic models.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) else None


@dataclass(slots=True)
class ToolCallDelta:
    """One fragment of a streamed tool call, keyed by its position index."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ToolCallDelta:
        """Build from one ``delta.tool_calls`` item; wrongly typed fields are treated as absent."""
        function = payload.get("function")
        if not isinstance(function, dict):
            function = {}
        index = payload.get("index")
        return cls(
            index=index if isinstance(index, int) and not isinstance(index, bool) else 0,
            id=_str_or_none(payload.get("id")),
            name=_str_or_none(function.get("name")),
            arguments=_str_or_none(function.get("arguments")),
        )


@dataclass(slots=True)
class UsageDelta:
    """Token usage reported on the final chunk when include_usage is requested."""

    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass(slots=True)
class StreamDelta:
    """One normalized incremental fragment of a streamed reply."""

    content: str | None = None
    reasoning_content: str | None = None
    tool_calls: list[ToolCallDelta] = field(default_factory=list)
    usage: UsageDelta | None = None
    finish_reason: str | None = None
