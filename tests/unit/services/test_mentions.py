"""Tests for @mention parsing."""

from __future__ import annotations

from parley.services.mentions import extract_mentioned_participant_ids, parse_mentions, strip_mentions

NAMES = {"p-1": "GPT 4o", "p-2": "Claude", "p-3": "Gemini Pro"}


class TestParseMentions:
    """Tests for parse_mentions."""

    def test_case_and_whitespace_insensitive(self) -> None:
        """Test that tokens match names with whitespace removed, ignoring case."""
        matches = parse_mentions("@gpt4o and @CLAUDE, thoughts?", NAMES)

        assert [m.participant_id for m in matches] == ["p-1"]
        assert matches[0].display_name == "GPT 4o"
        assert (matches[0].start, matches[0].end) == (0, 6)

    def test_trailing_punctuation_not_stripped(self) -> None:
        """Test that a token runs to the next whitespace."""
        assert parse_mentions("@Claude,", NAMES) == []
        assert [m.participant_id for m in parse_mentions("@Claude what?", NAMES)] == ["p-2"]

    def test_unknown_names_ignored(self) -> None:
        """Test that unrecognized tokens produce no match."""
        assert parse_mentions("email me @ home or @nobody", NAMES) == []

    def test_text_order(self) -> None:
        """Test that matches are returned in text order."""
        matches = parse_mentions("@GeminiPro then @Claude", NAMES)

        assert [m.participant_id for m in matches] == ["p-3", "p-2"]


class TestHelpers:
    """Tests for the id extraction and stripping helpers."""

    def test_ids_deduplicated(self) -> None:
        """Test that repeated mentions yield one id."""
        assert extract_mentioned_participant_ids("@Claude @claude @GPT4o", NAMES) == ["p-2", "p-1"]

    def test_strip_mentions(self) -> None:
        """Test that mention tokens are removed from text."""
        assert strip_mentions("@Claude  hello there") == "hello there"
