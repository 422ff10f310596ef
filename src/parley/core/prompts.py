"""
System prompts for Parley.
Centralizes the group chat roster and the context compression prompts.
"""

from __future__ import annotations

# Marker appended to the asking participant's own roster line
ROSTER_SELF_MARKER = "  ← you"

GROUP_ROSTER_HEADER = "You are in a group chat with multiple AI participants and one human user.\nParticipants:"

GROUP_ROSTER_RULES = """The human user's messages appear as: [User said]: content
Other AI participants' messages appear as: [Name said]: content
Your own previous messages appear as role=assistant (no prefix).
Always distinguish between the human user and other AI participants.
Think independently. Form your own opinions and do not simply agree with or echo others.
If you disagree, say so directly and explain why. Constructive debate is encouraged.
Do not repeat, summarize, or rephrase what others said unless asked."""

USER_SAID_PREFIX = "[User said]: "
PARTICIPANT_SAID_PREFIX = "[{name} said]: "

SUMMARY_MESSAGE_PREFIX = "[Previous conversation summary]\n"

COMPRESSION_SYSTEM_PROMPT = """You are a conversation context compressor. Create a concise summary that preserves essential information for conversation continuity.

## Rules
- Output in the SAME LANGUAGE as the conversation
- Preserve ALL technical terms, code, file paths, and proper nouns exactly
- Achieve 70-80% compression (summary = 20-30% of original)
- Use bullet points for clarity
- Never invent information not present in the original

## Output Format
Structure using these sections (omit empty ones):

### Context
Brief background (1-2 sentences)

### Key Information
- Critical facts, data, specifications
- Technical details, configurations

### Decisions & Action Items
- Decisions made, solutions agreed upon
- Tasks planned, next steps

### Code & Technical
```
Essential code snippets or commands
```"""

COMPRESSION_USER_PROMPT = (
    "Please compress the above conversation history into a structured summary. Output ONLY the summary, no commentary."
)


def build_group_roster(labels: list[str], self_index: int | None) -> str:
    """Render the roster that tells each AI who else is in the conversation.

    Args:
        labels: Display label of every participant, in conversation order
        self_index: Position of the participant the roster is written for

    Returns:
        Roster text with the asking participant marked
    """
    lines = [f"- {label}{ROSTER_SELF_MARKER if index == self_index else ''}" for index, label in enumerate(labels)]
    return "\n".join([GROUP_ROSTER_HEADER, *lines, "", GROUP_ROSTER_RULES])
