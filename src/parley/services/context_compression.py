"""
Context compression.

Estimates the token size of a conversation's history and, once it grows past
the configured threshold, summarizes the older messages with a non-streaming
completion. The summary stands in for those messages as a single
``[Previous conversation summary]`` user message while the most recent
messages are kept verbatim.
"""

from __future__ import annotations

import math
import re

from dataclasses import dataclass, field

from parley.core.constants import (
    COMPRESSION_MAX_TOKENS,
    COMPRESSION_TEMPERATURE,
    IMAGE_TOKEN_ESTIMATE,
    MESSAGE_TOKEN_OVERHEAD,
    get_settings,
)
from parley.core.prompts import COMPRESSION_SYSTEM_PROMPT, COMPRESSION_USER_PROMPT
from parley.integrations.llm_client import ChatCompletionRequest, ChatCompletionsClient
from parley.models.chat_models import Message, Provider
from parley.utils.logger import logger

# Han, Hiragana, Katakana and Hangul count roughly one token per two characters
_CJK_PATTERN = re.compile("[\\u4e00-\\u9fff\\u3040-\\u309f\\u30a0-\\u30ff\\uac00-\\ud7af]")

MANUAL_KEEP_RECENT = 4


def estimate_tokens(text: str | None) -> int:
    """Rough token estimate: ~4 characters per token, ~2 for CJK."""
    if not text:
        return 0
    cjk_count = len(_CJK_PATTERN.findall(text))
    return math.ceil((len(text) - cjk_count) / 4 + cjk_count / 2)


def estimate_message_tokens(message: Message) -> int:
    return MESSAGE_TOKEN_OVERHEAD + estimate_tokens(message.content) + IMAGE_TOKEN_ESTIMATE * len(message.images)


def estimate_history_tokens(messages: list[Message]) -> int:
    return sum(estimate_message_tokens(message) for message in messages)


@dataclass
class CompressionResult:
    """History after compression.

    ``messages`` are the messages to send verbatim; ``summary`` replaces
    everything older when set.
    """

    messages: list[Message] = field(default_factory=list)
    summary: str | None = None
    compressed_ids: list[str] = field(default_factory=list)

    @property
    def compressed(self) -> bool:
        return bool(self.compressed_ids)


def render_transcript(messages: list[Message], labels: dict[str, str] | None = None) -> str:
    """Flatten messages into ``[speaker]: content`` blocks for the summarizer."""
    labels = labels or {}
    blocks = []
    for message in messages:
        speaker = message.role if message.role == "user" else labels.get(message.participant_id or "", message.role)
        content = message.content
        if message.images:
            content = f"{content} [{len(message.images)} image(s)]".strip()
        blocks.append(f"[{speaker}]: {content}")
    return "\n\n".join(blocks)


class ContextCompressor:
    """Summarizes older history once it outgrows the token threshold."""

    def __init__(
        self,
        llm_client: ChatCompletionsClient,
        threshold: int | None = None,
        keep_recent: int | None = None,
    ):
        settings = get_settings()
        self.llm_client = llm_client
        self.threshold = threshold if threshold is not None else settings.compression_threshold
        self.keep_recent = keep_recent if keep_recent is not None else settings.compression_keep_recent

    async def summarize(
        self,
        messages: list[Message],
        provider: Provider,
        model_id: str,
        labels: dict[str, str] | None = None,
    ) -> str:
        """Summarize ``messages`` with one non-streaming completion.

        Raises:
            LLMRequestError: If the endpoint answers with a non-OK status
            ValueError: If the model returned an empty summary
        """
        request = ChatCompletionRequest(
            model=model_id,
            messages=[
                {"role": "system", "content": COMPRESSION_SYSTEM_PROMPT},
                {"role": "user", "content": render_transcript(messages, labels)},
                {"role": "user", "content": COMPRESSION_USER_PROMPT},
            ],
            stream=False,
            max_tokens=COMPRESSION_MAX_TOKENS,
            temperature=COMPRESSION_TEMPERATURE,
        )
        summary = await self.llm_client.complete(provider, request)
        if not summary:
            raise ValueError("Empty compression result")
        return summary

    async def compress_if_needed(
        self,
        messages: list[Message],
        provider: Provider,
        model_id: str,
        labels: dict[str, str] | None = None,
        reserved_tokens: int = 0,
    ) -> CompressionResult:
        """Compress ``messages`` when their estimate exceeds the threshold.

        Args:
            messages: History to send, oldest first
            provider: Endpoint used for the summarization call
            model_id: Model used for the summarization call
            labels: Display name by participant id for the transcript
            reserved_tokens: Tokens already taken by the system prompt

        Returns:
            The history unchanged, or the recent messages plus a summary.
            A failed or empty summarization leaves the history unchanged.
        """
        unchanged = CompressionResult(messages=list(messages))
        total = estimate_history_tokens(messages) + reserved_tokens
        if total <= self.threshold:
            return unchanged

        keep_count = min(self.keep_recent, len(messages))
        split = len(messages) - keep_count
        to_compress, to_keep = messages[:split], messages[split:]
        if len(to_compress) <= 1:
            return unchanged

        logger.info(f"Context at ~{total} tokens exceeds {self.threshold}, compressing {len(to_compress)} messages")
        try:
            summary = await self.summarize(to_compress, provider, model_id, labels)
        except Exception as e:
            logger.warning(f"Context compression failed, sending full history: {e}")
            return unchanged

        original_tokens = estimate_history_tokens(to_compress)
        summary_tokens = estimate_tokens(summary)
        logger.info(f"Compressed {len(to_compress)} messages: {original_tokens} -> {summary_tokens} tokens")
        return CompressionResult(messages=list(to_keep), summary=summary, compressed_ids=[m.id for m in to_compress])

    async def summarize_history(
        self,
        messages: list[Message],
        provider: Provider,
        model_id: str,
        labels: dict[str, str] | None = None,
        keep_recent: int = MANUAL_KEEP_RECENT,
    ) -> tuple[str, str]:
        """Summarize all but the ``keep_recent`` newest messages on demand.

        Returns:
            Tuple of (summary, id of the newest summarized message)

        Raises:
            ValueError: If there are not enough messages to compress
        """
        keep_count = min(keep_recent, len(messages))
        to_compress = messages[: len(messages) - keep_count]
        if len(to_compress) <= 1:
            raise ValueError("Not enough messages to compress")
        summary = await self.summarize(to_compress, provider, model_id, labels)
        return summary, to_compress[-1].id
