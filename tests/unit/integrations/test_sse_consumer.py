"""Tests for the SSE delta consumer.

Tests framing, chunk-boundary invariance, reasoning normalization and the
inline <think> scanner.
"""

from __future__ import annotations

import json

from collections.abc import AsyncIterator

import pytest

from parley.integrations.sse_consumer import (
    REASONING_EXTRACTION_RULES,
    ExtractionRule,
    ThinkTagScanner,
    consume_sse_deltas,
    normalize_reasoning,
    parse_chunk,
)
from parley.models.stream_models import StreamDelta, ToolCallDelta, UsageDelta


def chunk(delta: dict, **extra: object) -> str:
    return json.dumps({"choices": [{"index": 0, "delta": delta, **extra}]})


async def iterate(parts: list[bytes | str]) -> AsyncIterator[bytes | str]:
    for part in parts:
        yield part


async def collect(parts: list[bytes | str]) -> list[StreamDelta]:
    return [delta async for delta in consume_sse_deltas(iterate(parts))]


SAMPLE_BODY = (
    "data: " + chunk({"role": "assistant"}) + "\n\n"
    "data: " + chunk({"content": "Grüße, "}) + "\n\n"
    ": keep-alive\n\n"
    "data: " + chunk({"content": "世界 🌍"}) + "\n\n"
    "data: " + chunk({"tool_calls": [{"index": 0, "id": "call_1", "function": {"name": "get_", "arguments": ""}}]})
    + "\n\n"
    "data: " + chunk({"tool_calls": [{"index": 0, "function": {"name": "weather", "arguments": '{"city":'}}]})
    + "\n\n"
    "data: " + chunk({"tool_calls": [{"index": 0, "function": {"arguments": '"Oslo"}'}}]}) + "\n\n"
    "data: " + json.dumps({"choices": [], "usage": {"prompt_tokens": 12, "completion_tokens": 7}}) + "\n\n"
    "data: [DONE]\n\n"
).encode("utf-8")


class TestParseChunk:
    """Tests for parse_chunk."""

    def test_content_delta(self) -> None:
        """Test that content is extracted from the first choice."""
        delta = parse_chunk(chunk({"content": "hi"}))

        assert delta == StreamDelta(content="hi")

    def test_role_only_chunk_is_skipped(self) -> None:
        """Test that a chunk carrying nothing yields no delta."""
        assert parse_chunk(chunk({"role": "assistant"})) is None

    def test_malformed_json_returns_none(self) -> None:
        """Test that malformed JSON is skipped instead of raising."""
        assert parse_chunk("{not json") is None

    def test_usage_only_chunk(self) -> None:
        """Test that a usage chunk with empty choices still yields usage."""
        delta = parse_chunk(json.dumps({"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 4}}))

        assert delta is not None
        assert delta.usage == UsageDelta(prompt_tokens=3, completion_tokens=4)
        assert delta.content is None

    def test_tool_call_fragment(self) -> None:
        """Test that tool call fragments keep their index."""
        delta = parse_chunk(
            chunk({"tool_calls": [{"index": 2, "id": "c", "function": {"name": "f", "arguments": "{"}}]})
        )

        assert delta is not None
        assert delta.tool_calls == [ToolCallDelta(index=2, id="c", name="f", arguments="{")]

    def test_finish_reason_recorded(self) -> None:
        """Test that finish_reason is carried on the delta."""
        delta = parse_chunk(chunk({}, finish_reason="stop"))

        assert delta is not None
        assert delta.finish_reason == "stop"

    @pytest.mark.parametrize(
        "record",
        [
            chunk({"tool_calls": [{"index": 0, "function": "get_weather"}]}),
            chunk({"tool_calls": {"index": 0}}),
            chunk({"tool_calls": [{"index": "zero", "id": 5, "function": {"name": ["f"], "arguments": {}}}]}),
            json.dumps({"choices": [], "usage": {"prompt_tokens": "n/a", "completion_tokens": None}}),
            json.dumps({"choices": "none"}),
            json.dumps({"choices": [{"delta": "text"}]}),
        ],
    )
    def test_wrongly_shaped_fields_do_not_raise(self, record: str) -> None:
        """Test that valid JSON with unexpected field types never raises."""
        delta = parse_chunk(record)

        assert delta is None or delta.content is None

    def test_non_numeric_usage_counts_as_zero(self) -> None:
        """Test that unusable token counts are read as zero."""
        delta = parse_chunk(json.dumps({"choices": [], "usage": {"prompt_tokens": "n/a", "completion_tokens": 9}}))

        assert delta is not None
        assert delta.usage == UsageDelta(prompt_tokens=0, completion_tokens=9)

    def test_tool_call_with_string_function_keeps_index(self) -> None:
        """Test that a non-object function field is treated as absent."""
        assert ToolCallDelta.from_payload({"index": 1, "id": "c", "function": "x"}) == ToolCallDelta(index=1, id="c")


class TestReasoningNormalization:
    """Tests for the ordered reasoning extraction rules."""

    def test_canonical_field_wins(self) -> None:
        """Test that delta.reasoning_content is used when present."""
        result = normalize_reasoning({"reasoning": "choice"}, {"reasoning_content": "canonical", "thinking": "x"})

        assert result == "canonical"

    def test_choice_fields_before_delta_fields(self) -> None:
        """Test that choice-level fields are consulted before delta-level ones."""
        result = normalize_reasoning({"thinking": "from choice"}, {"reasoning": "from delta"})

        assert result == "from choice"

    @pytest.mark.parametrize("field", ["reasoning", "thinking", "thinking_content"])
    def test_delta_aliases(self, field: str) -> None:
        """Test that every delta alias is normalized."""
        delta = parse_chunk(chunk({field: "pondering"}))

        assert delta is not None
        assert delta.reasoning_content == "pondering"

    def test_empty_values_are_skipped(self) -> None:
        """Test that empty strings do not stop the rule search."""
        result = normalize_reasoning({"reasoning_content": ""}, {"thinking": "later"})

        assert result == "later"

    def test_custom_rules(self) -> None:
        """Test that callers can supply their own rule list."""
        rules = (ExtractionRule("delta", "thoughts"),)

        assert normalize_reasoning({}, {"thoughts": "custom"}, rules) == "custom"
        assert normalize_reasoning({}, {"thoughts": "custom"}, REASONING_EXTRACTION_RULES) is None


class TestConsumeSseDeltas:
    """Tests for consume_sse_deltas."""

    @pytest.mark.asyncio
    async def test_whole_body(self) -> None:
        """Test the deltas of an unsplit body."""
        deltas = await collect([SAMPLE_BODY])

        assert [d.content for d in deltas if d.content] == ["Grüße, ", "世界 🌍"]
        assert len([d for d in deltas if d.tool_calls]) == 3
        assert deltas[-1].usage == UsageDelta(prompt_tokens=12, completion_tokens=7)

    @pytest.mark.asyncio
    async def test_every_two_way_split_gives_identical_deltas(self) -> None:
        """Test that splitting the body at any byte offset does not change the result."""
        expected = await collect([SAMPLE_BODY])

        for offset in range(1, len(SAMPLE_BODY)):
            parts: list[bytes | str] = [SAMPLE_BODY[:offset], SAMPLE_BODY[offset:]]
            assert await collect(parts) == expected, f"split at byte {offset}"

    @pytest.mark.asyncio
    async def test_byte_by_byte_gives_identical_deltas(self) -> None:
        """Test that feeding one byte at a time, splitting multi-byte characters, is lossless."""
        expected = await collect([SAMPLE_BODY])

        parts: list[bytes | str] = [SAMPLE_BODY[i : i + 1] for i in range(len(SAMPLE_BODY))]

        assert await collect(parts) == expected

    @pytest.mark.asyncio
    async def test_done_terminates_sequence(self) -> None:
        """Test that records after [DONE] are ignored."""
        body = f"data: {chunk({'content': 'a'})}\n\ndata: [DONE]\n\ndata: {chunk({'content': 'b'})}\n\n"

        deltas = await collect([body])

        assert [d.content for d in deltas] == ["a"]

    @pytest.mark.asyncio
    async def test_malformed_line_does_not_abort(self) -> None:
        """Test that one bad frame is skipped and the stream continues."""
        body = f"data: {chunk({'content': 'a'})}\n\ndata: {{broken\n\ndata: {chunk({'content': 'b'})}\n\n"

        deltas = await collect([body])

        assert [d.content for d in deltas] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_wrongly_shaped_frame_does_not_abort(self) -> None:
        """Test that a valid-JSON frame with wrong field types is skipped mid-stream."""
        bad_frames = [
            chunk({"tool_calls": [{"index": 0, "function": "oops"}]}),
            json.dumps({"choices": [], "usage": {"prompt_tokens": "n/a"}}),
            chunk({"tool_calls": "not-a-list"}),
        ]
        for bad in bad_frames:
            body = f"data: {chunk({'content': 'a'})}\n\ndata: {bad}\n\ndata: {chunk({'content': 'b'})}\n\n"

            deltas = await collect([body])

            assert "".join(d.content or "" for d in deltas) == "ab"

    @pytest.mark.asyncio
    async def test_non_data_fields_ignored(self) -> None:
        """Test that event/id/comment lines are not records."""
        body = f"event: message\nid: 4\n: comment\ndata: {chunk({'content': 'x'})}\n\n"

        deltas = await collect([body])

        assert [d.content for d in deltas] == ["x"]

    @pytest.mark.asyncio
    async def test_data_prefix_without_space(self) -> None:
        """Test that the space after data: is optional."""
        deltas = await collect([f"data:{chunk({'content': 'tight'})}\n"])

        assert [d.content for d in deltas] == ["tight"]

    @pytest.mark.asyncio
    async def test_unterminated_final_record_is_parsed(self) -> None:
        """Test that a trailing record without newline is parsed best-effort."""
        deltas = await collect([f"data: {chunk({'content': 'a'})}\n", f"data: {chunk({'content': 'tail'})}"])

        assert [d.content for d in deltas] == ["a", "tail"]

    @pytest.mark.asyncio
    async def test_crlf_line_endings(self) -> None:
        """Test that CRLF-terminated lines parse like LF ones."""
        deltas = await collect([f"data: {chunk({'content': 'win'})}\r\n\r\n"])

        assert [d.content for d in deltas] == ["win"]


class TestThinkTagScanner:
    """Tests for ThinkTagScanner."""

    @staticmethod
    def run(parts: list[str]) -> tuple[str, str]:
        scanner = ThinkTagScanner()
        content, reasoning = "", ""
        for part in parts:
            c, r = scanner.feed(part)
            content += c
            reasoning += r
        c, r = scanner.finish()
        return content + c, reasoning + r

    def test_single_chunk(self) -> None:
        """Test that a complete span is routed to reasoning."""
        assert self.run(["Hello<think>deep</think>World"]) == ("HelloWorld", "deep")

    @pytest.mark.parametrize("text", ["Hello<think>deep</think>World", "Hello<thinking>deep</thinking>World"])
    def test_every_split_point(self, text: str) -> None:
        """Test that splitting anywhere, including inside a tag, gives the same result."""
        for offset in range(len(text) + 1):
            assert self.run([text[:offset], text[offset:]]) == ("HelloWorld", "deep"), f"split at {offset}"

    def test_character_by_character(self) -> None:
        """Test that feeding one character at a time never leaks a tag into content."""
        text = "a<think>b</think>c<thinking>d</thinking>e"

        assert self.run(list(text)) == ("ace", "bd")

    def test_state_carries_across_calls(self) -> None:
        """Test that in_reasoning persists between feeds."""
        scanner = ThinkTagScanner()

        assert scanner.feed("<think>start") == ("", "start")
        assert scanner.in_reasoning is True
        assert scanner.feed(" more</think>done") == ("done", " more")
        assert scanner.in_reasoning is False

    def test_partial_tag_held_back(self) -> None:
        """Test that a possible tag prefix is withheld until resolved."""
        scanner = ThinkTagScanner()

        assert scanner.feed("value <thi") == ("value ", "")
        assert scanner.feed("s is fine") == ("<this is fine", "")

    def test_finish_releases_unresolved_prefix(self) -> None:
        """Test that finish() returns held text that never became a tag."""
        scanner = ThinkTagScanner()
        scanner.feed("x <")

        assert scanner.finish() == ("<", "")

    def test_unclosed_span_stays_reasoning(self) -> None:
        """Test that an unclosed span keeps routing to reasoning."""
        assert self.run(["<think>never closed"]) == ("", "never closed")
