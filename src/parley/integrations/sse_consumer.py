"""
Server-sent-event delta consumer for OpenAI-compatible chat completions.

Turns a streamed response body framed as ``data: <json>`` lines into a lazy
sequence of normalized StreamDelta objects:

- Partial lines are buffered across reads; a record is parsed only once its
  line is complete, and the unterminated tail is parsed once after the body ends.
- A malformed JSON line is skipped; one bad frame never aborts the stream.
- Reasoning text arrives under several historical field names and is
  normalized into ``reasoning_content`` by an ordered list of extraction rules.
- ``data: [DONE]`` ends the sequence.

Inline ``<think>...</think>`` spans inside content are separated by
ThinkTagScanner, which the orchestrator applies to content deltas.
"""

from __future__ import annotations

import codecs
import json

from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass
from typing import Any, Literal

from parley.models.stream_models import StreamDelta, ToolCallDelta, UsageDelta
from parley.utils.logger import logger

DONE_SENTINEL = "[DONE]"
DATA_PREFIX = "data:"


# ============================================================================
# Reasoning normalization
# ============================================================================


@dataclass(frozen=True, slots=True)
class ExtractionRule:
    """Reads reasoning text from one field of a choice or of its delta."""

    scope: Literal["choice", "delta"]
    field: str

    def extract(self, choice: dict[str, Any], delta: dict[str, Any]) -> str | None:
        source = choice if self.scope == "choice" else delta
        value = source.get(self.field)
        if isinstance(value, str) and value:
            return value
        return None


#: Applied in order when ``delta.reasoning_content`` is empty; first non-empty match wins.
REASONING_EXTRACTION_RULES: tuple[ExtractionRule, ...] = (
    ExtractionRule("choice", "reasoning_content"),
    ExtractionRule("choice", "reasoning"),
    ExtractionRule("choice", "thinking"),
    ExtractionRule("choice", "thinking_content"),
    ExtractionRule("delta", "reasoning"),
    ExtractionRule("delta", "thinking"),
    ExtractionRule("delta", "thinking_content"),
)


def normalize_reasoning(
    choice: dict[str, Any],
    delta: dict[str, Any],
    rules: tuple[ExtractionRule, ...] = REASONING_EXTRACTION_RULES,
) -> str | None:
    """Return the reasoning text of one choice under its canonical name."""
    canonical = delta.get("reasoning_content")
    if isinstance(canonical, str) and canonical:
        return canonical
    for rule in rules:
        value = rule.extract(choice, delta)
        if value:
            return value
    return None


# ============================================================================
# Record parsing
# ============================================================================


def _token_count(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return 0


def parse_chunk(payload: str) -> StreamDelta | None:
    """Parse one ``data:`` payload into a StreamDelta.

    Returns None for malformed JSON, for records whose fields have the wrong
    shape, and for chunks that carry nothing (for example a role-only first
    delta).
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug(f"Skipping malformed SSE record: {payload[:80]!r}")
        return None
    if not isinstance(data, dict):
        return None

    try:
        return _delta_from_record(data)
    except (ValueError, TypeError, AttributeError) as e:
        logger.debug(f"Skipping unexpected SSE record shape ({e}): {payload[:80]!r}")
        return None


def _delta_from_record(data: dict[str, Any]) -> StreamDelta | None:
    usage: UsageDelta | None = None
    raw_usage = data.get("usage")
    if isinstance(raw_usage, dict):
        usage = UsageDelta(
            prompt_tokens=_token_count(raw_usage.get("prompt_tokens")),
            completion_tokens=_token_count(raw_usage.get("completion_tokens")),
        )

    choices = data.get("choices")
    choice = choices[0] if isinstance(choices, list) and choices and isinstance(choices[0], dict) else {}
    delta = choice.get("delta")
    if not isinstance(delta, dict):
        delta = {}

    content = delta.get("content")
    if not isinstance(content, str) or not content:
        content = None

    raw_calls = delta.get("tool_calls")
    if not isinstance(raw_calls, list):
        raw_calls = []
    tool_calls = [ToolCallDelta.from_payload(item) for item in raw_calls if isinstance(item, dict)]
    reasoning = normalize_reasoning(choice, delta)
    finish_reason = choice.get("finish_reason")
    if not isinstance(finish_reason, str):
        finish_reason = None

    if content is None and reasoning is None and not tool_calls and usage is None and not finish_reason:
        return None
    return StreamDelta(
        content=content,
        reasoning_content=reasoning,
        tool_calls=tool_calls,
        usage=usage,
        finish_reason=finish_reason,
    )


def _data_payload(line: str) -> str | None:
    line = line.strip()
    if not line.startswith(DATA_PREFIX):
        return None
    return line[len(DATA_PREFIX) :].strip()


async def consume_sse_deltas(chunks: AsyncIterable[bytes | str]) -> AsyncIterator[StreamDelta]:
    """Yield normalized deltas from a chunked SSE response body.

    The parsed sequence does not depend on where the body is split into
    chunks, including splits inside multi-byte UTF-8 characters.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""

    async for chunk in chunks:
        buffer += decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        *lines, buffer = buffer.split("\n")
        for line in lines:
            payload = _data_payload(line)
            if payload is None:
                continue
            if payload == DONE_SENTINEL:
                return
            delta = parse_chunk(payload)
            if delta is not None:
                yield delta

    # Best effort for a final record without a trailing newline
    buffer += decoder.decode(b"", final=True)
    for line in buffer.split("\n"):
        payload = _data_payload(line)
        if payload is None or payload == DONE_SENTINEL:
            continue
        delta = parse_chunk(payload)
        if delta is not None:
            yield delta


# ============================================================================
# Inline <think> spans
# ============================================================================

OPEN_TAGS = ("<think>", "<thinking>")
CLOSE_TAGS = ("</think>", "</thinking>")


def _find_first(text: str, tags: tuple[str, ...]) -> tuple[int, str | None]:
    best_index, best_tag = -1, None
    for tag in tags:
        index = text.find(tag)
        if index != -1 and (best_index == -1 or index < best_index):
            best_index, best_tag = index, tag
    return best_index, best_tag


def _partial_tag_length(text: str, tags: tuple[str, ...]) -> int:
    """Length of the longest suffix of ``text`` that is a proper prefix of a tag."""
    longest = 0
    for tag in tags:
        for size in range(min(len(tag) - 1, len(text)), longest, -1):
            if text.endswith(tag[:size]):
                longest = size
                break
    return longest


class ThinkTagScanner:
    """Routes text inside ``<think>`` / ``<thinking>`` spans to reasoning.

    Tags may be split anywhere across calls to feed(). A trailing fragment
    that could still become a tag is held back until the next call, so no
    part of a marker ever reaches the content side.
    """

    def __init__(self) -> None:
        self.in_reasoning = False
        self._held = ""

    def feed(self, text: str) -> tuple[str, str]:
        """Split one content delta into (content, reasoning)."""
        text = self._held + text
        self._held = ""
        content: list[str] = []
        reasoning: list[str] = []

        while text:
            tags = CLOSE_TAGS if self.in_reasoning else OPEN_TAGS
            target = reasoning if self.in_reasoning else content
            index, tag = _find_first(text, tags)
            if tag is None:
                held = _partial_tag_length(text, tags)
                if held:
                    self._held = text[-held:]
                    text = text[:-held]
                target.append(text)
                break
            target.append(text[:index])
            text = text[index + len(tag) :]
            self.in_reasoning = not self.in_reasoning

        return "".join(content), "".join(reasoning)

    def finish(self) -> tuple[str, str]:
        """Release held-back text at end of stream as (content, reasoning)."""
        held, self._held = self._held, ""
        if self.in_reasoning:
            return "", held
        return held, ""
