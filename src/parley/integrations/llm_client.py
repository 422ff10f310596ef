"""
Client for OpenAI-compatible chat completion endpoints.

Builds ``POST {base_url}/chat/completions`` requests with bearer auth,
provider custom headers and an optional ``api-version`` query parameter, and
streams the response through the SSE delta consumer.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import httpx

from pydantic import BaseModel, Field

from parley.core.exceptions import LLMRequestError
from parley.integrations.sse_consumer import consume_sse_deltas
from parley.models.chat_models import Provider
from parley.models.stream_models import StreamDelta
from parley.utils.client_factory import create_http_client
from parley.utils.logger import logger


class ChatCompletionRequest(BaseModel):
    """Body of a chat completion request."""

    model: str
    messages: list[dict[str, Any]]
    stream: bool = True
    stream_options: dict[str, Any] | None = Field(default_factory=lambda: {"include_usage": True})
    temperature: float | None = None
    top_p: float | None = None
    reasoning_effort: str | None = None
    max_tokens: int | None = None
    tools: list[dict[str, Any]] | None = None

    def to_payload(self) -> dict[str, Any]:
        payload = self.model_dump(exclude_none=True)
        if not self.stream:
            payload.pop("stream_options", None)
        if not self.tools:
            payload.pop("tools", None)
        return payload


def build_endpoint(provider: Provider) -> tuple[str, dict[str, str]]:
    """Return the completions URL and query parameters for a provider."""
    url = f"{provider.base_url.rstrip('/')}/chat/completions"
    params = {"api-version": provider.api_version} if provider.api_version else {}
    return url, params


def build_headers(provider: Provider) -> dict[str, str]:
    """Return request headers: JSON content type, bearer auth and custom headers."""
    headers = {"Content-Type": "application/json"}
    if provider.api_key:
        headers["Authorization"] = f"Bearer {provider.api_key}"
    headers.update(provider.custom_headers)
    return headers


class ChatCompletionsClient:
    """Streams chat completions over a shared httpx client."""

    def __init__(self, http_client: httpx.AsyncClient | None = None):
        self._client = http_client or create_http_client()
        self._owns_client = http_client is None

    async def stream_chat(self, provider: Provider, request: ChatCompletionRequest) -> AsyncIterator[StreamDelta]:
        """Yield deltas of a streamed completion.

        Raises:
            LLMRequestError: If the endpoint answers with a non-OK status
            httpx.HTTPError: On network failures
        """
        url, params = build_endpoint(provider)
        payload = request.to_payload()
        logger.debug(f"Streaming completion: model={request.model} messages={len(request.messages)}")

        async with self._client.stream(
            "POST", url, params=params, headers=build_headers(provider), json=payload
        ) as response:
            if not response.is_success:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise LLMRequestError(response.status_code, body)
            async for delta in consume_sse_deltas(response.aiter_bytes()):
                yield delta

    async def complete(self, provider: Provider, request: ChatCompletionRequest) -> str:
        """Run a non-streaming completion and return the first choice's text.

        Raises:
            LLMRequestError: If the endpoint answers with a non-OK status
        """
        url, params = build_endpoint(provider)
        body = request.model_copy(update={"stream": False})
        response = await self._client.post(url, params=params, headers=build_headers(provider), json=body.to_payload())
        if not response.is_success:
            raise LLMRequestError(response.status_code, response.text)
        data = response.json()
        choices = data.get("choices") or [{}]
        content = (choices[0].get("message") or {}).get("content")
        return content.strip() if isinstance(content, str) else ""

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
