"""@mention parsing for group conversations."""

from __future__ import annotations

import re

from dataclasses import dataclass

MENTION_PATTERN = re.compile(r"@(\S+)")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True, slots=True)
class MentionMatch:
    participant_id: str
    display_name: str
    start: int
    end: int


def _normalize(name: str) -> str:
    return _WHITESPACE.sub("", name).lower()


def parse_mentions(text: str, participant_names: dict[str, str]) -> list[MentionMatch]:
    """Find ``@name`` tokens that refer to participants.

    A token matches a participant when it equals the participant's display
    name with all whitespace removed, ignoring case. ``@GPT4o`` therefore
    matches a participant labelled ``GPT 4o``.

    Args:
        text: Message text
        participant_names: Display name by participant id, in conversation order

    Returns:
        One match per recognized token, in text order
    """
    normalized = {participant_id: _normalize(name) for participant_id, name in participant_names.items()}
    matches: list[MentionMatch] = []
    for found in MENTION_PATTERN.finditer(text):
        token = found.group(1).lower()
        for participant_id, name in normalized.items():
            if token == name:
                matches.append(
                    MentionMatch(
                        participant_id=participant_id,
                        display_name=participant_names[participant_id],
                        start=found.start(),
                        end=found.end(),
                    )
                )
                break
    return matches


def extract_mentioned_participant_ids(text: str, participant_names: dict[str, str]) -> list[str]:
    """Participant ids mentioned in ``text``, without duplicates, in text order."""
    return list(dict.fromkeys(match.participant_id for match in parse_mentions(text, participant_names)))


def strip_mentions(text: str) -> str:
    return MENTION_PATTERN.sub("", text).strip()
