"""
Request message construction.

Turns stored conversation history into the chat completion ``messages`` array
for one participant: persona prompt and group roster as the system message,
then the history relabeled from that participant's point of view.
"""

from __future__ import annotations

from typing import Any

from parley.core.prompts import (
    PARTICIPANT_SAID_PREFIX,
    SUMMARY_MESSAGE_PREFIX,
    USER_SAID_PREFIX,
    build_group_roster,
)
from parley.models.chat_models import Conversation, Message, MessageStatus, Participant
from parley.storage.catalog import Catalog

ApiMessage = dict[str, Any]

# Label used when a message's participant has since left the conversation
UNKNOWN_SENDER_LABEL = "Assistant"


def resolve_target_participants(
    conversation: Conversation, mentioned_ids: list[str] | None = None
) -> list[Participant]:
    """Decide which participants answer a user message.

    Single chats always answer with their one participant. Group chats answer
    with the mentioned participants if there are any, else with everyone.
    """
    if not conversation.is_group:
        return conversation.participants[:1]
    if mentioned_ids:
        mentioned = set(mentioned_ids)
        return [p for p in conversation.participants if p.id in mentioned]
    return list(conversation.participants)


def build_system_prompt(conversation: Conversation, participant: Participant, catalog: Catalog) -> str | None:
    """System message text for ``participant``, or None when there is none.

    Group chats always get the roster, preceded by the persona prompt when the
    participant has one. Single chats get the persona prompt only.
    """
    persona = catalog.get_persona(participant.persona_id)
    persona_prompt = persona.system_prompt if persona and persona.system_prompt else None

    if not conversation.is_group:
        return persona_prompt

    labels = [catalog.participant_label(p) for p in conversation.participants]
    self_index = next((i for i, p in enumerate(conversation.participants) if p.id == participant.id), None)
    roster = build_group_roster(labels, self_index)
    return f"{persona_prompt}\n\n{roster}" if persona_prompt else roster


def is_history_message(message: Message) -> bool:
    """Streaming and errored messages never reach a request."""
    return not message.is_streaming and message.status == MessageStatus.SUCCESS


def _content_with_images(text: str, images: list[str]) -> str | list[dict[str, Any]]:
    if not images:
        return text
    parts: list[dict[str, Any]] = []
    if text:
        parts.append({"type": "text", "text": text})
    parts.extend({"type": "image_url", "image_url": {"url": url}} for url in images)
    return parts


def build_api_messages(
    history: list[Message],
    conversation: Conversation,
    participant: Participant,
    catalog: Catalog,
    summary: str | None = None,
) -> list[ApiMessage]:
    """Build the request ``messages`` for one participant.

    Args:
        history: Stored messages, oldest first
        conversation: Conversation the turn belongs to
        participant: Participant about to answer
        catalog: Lookup for personas and model names
        summary: Summary replacing older history, injected after the system message

    Returns:
        OpenAI chat ``messages`` array
    """
    api_messages: list[ApiMessage] = []

    system_prompt = build_system_prompt(conversation, participant, catalog)
    if system_prompt:
        api_messages.append({"role": "system", "content": system_prompt})
    if summary:
        api_messages.append({"role": "user", "content": f"{SUMMARY_MESSAGE_PREFIX}{summary}"})

    is_group = conversation.is_group
    labels = {p.id: catalog.participant_label(p) for p in conversation.participants}

    for message in history:
        if not is_history_message(message):
            continue

        role = message.role
        prefix = ""
        if is_group:
            if role == "user":
                prefix = USER_SAID_PREFIX
            elif message.participant_id != participant.id:
                role = "user"
                name = labels.get(message.participant_id or "", UNKNOWN_SENDER_LABEL)
                prefix = PARTICIPANT_SAID_PREFIX.format(name=name)

        text = f"{prefix}{message.content}" if prefix else message.content
        images = message.images if message.role == "user" else []
        api_messages.append({"role": role, "content": _content_with_images(text, images)})

    return api_messages
