"""Shared test fixtures for the Parley test suite.

Provides settings isolation, model factories and scripted fakes for the
upstream completion endpoint.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Generator
from typing import Any
from unittest.mock import AsyncMock

import pytest

from parley.core.constants import clear_settings_cache
from parley.integrations.llm_client import ChatCompletionRequest
from parley.models.chat_models import Conversation, ModelRef, Participant, Persona, Provider
from parley.models.stream_models import StreamDelta, ToolCallDelta, UsageDelta
from parley.storage.catalog import Catalog
from parley.storage.message_store import InMemoryMessageStore

# ============================================================================
# Test Isolation: Settings
# ============================================================================


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Start every test from default settings.

    Timing knobs are shortened so flush and frame timers fire quickly.
    """
    monkeypatch.setenv("PARLEY_BATCH_FLUSH_INTERVAL", "0.01")
    monkeypatch.setenv("PARLEY_FRAME_INTERVAL", "0.001")
    monkeypatch.setenv("PARLEY_CONTEXT_COMPRESSION_ENABLED", "false")
    clear_settings_cache()
    yield
    clear_settings_cache()


# ============================================================================
# Model Factories
# ============================================================================


@pytest.fixture
def provider() -> Provider:
    return Provider(id="prov", name="Test", base_url="https://llm.test/v1", api_key="sk-test")


@pytest.fixture
def catalog(provider: Provider) -> Catalog:
    """Catalog with two models (Alpha, Beta) on one provider and no built-ins enabled."""
    catalog = Catalog(enabled_builtin_tools=[])
    catalog.add_provider(provider)
    catalog.add_model(ModelRef(id="m-alpha", provider_id=provider.id, model_id="alpha-1", display_name="Alpha"))
    catalog.add_model(ModelRef(id="m-beta", provider_id=provider.id, model_id="beta-1", display_name="Beta"))
    return catalog


@pytest.fixture
def store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


def make_persona(name: str, **kwargs: Any) -> Persona:
    return Persona(id=f"persona-{name.lower()}", name=name, **kwargs)


@pytest.fixture
def single_conversation() -> Conversation:
    return Conversation(id="conv-single", participants=[Participant(id="p-alpha", model_id="m-alpha")])


@pytest.fixture
def group_conversation() -> Conversation:
    return Conversation(
        id="conv-group",
        participants=[
            Participant(id="p-alpha", model_id="m-alpha"),
            Participant(id="p-beta", model_id="m-beta"),
        ],
    )


# ============================================================================
# Streaming helpers
# ============================================================================


def text_delta(content: str) -> StreamDelta:
    return StreamDelta(content=content)


def tool_delta(
    index: int, call_id: str | None = None, name: str | None = None, arguments: str | None = None
) -> StreamDelta:
    return StreamDelta(tool_calls=[ToolCallDelta(index=index, id=call_id, name=name, arguments=arguments)])


def usage_delta(prompt_tokens: int, completion_tokens: int) -> StreamDelta:
    return StreamDelta(usage=UsageDelta(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens))


def sse_bytes(*payloads: str) -> bytes:
    """Frame JSON payloads as an SSE body terminated by [DONE]."""
    body = "".join(f"data: {payload}\n\n" for payload in payloads)
    return (body + "data: [DONE]\n\n").encode("utf-8")


class ScriptedLLMClient:
    """Stands in for ChatCompletionsClient, replaying one scripted stream per request.

    Each script entry is a list of StreamDelta, or an Exception to raise when
    the stream starts. Requests are recorded for assertions.
    """

    def __init__(self, scripts: list[list[StreamDelta] | Exception] | None = None):
        self.scripts = list(scripts or [])
        self.requests: list[ChatCompletionRequest] = []
        self.complete = AsyncMock(return_value="")
        self.aclose = AsyncMock()

    async def stream_chat(self, provider: Provider, request: ChatCompletionRequest) -> AsyncIterator[StreamDelta]:
        self.requests.append(request)
        script = self.scripts.pop(0) if self.scripts else [text_delta("")]
        if isinstance(script, Exception):
            raise script
        for delta in script:
            yield delta


@pytest.fixture
def scripted_llm() -> ScriptedLLMClient:
    return ScriptedLLMClient()
