"""
HTTP traffic logging for upstream completion endpoints and MCP servers.

Attached to httpx clients as event hooks. Request bodies are summarized
(model, message count, JSON-RPC method) rather than dumped, and only shown in
full when content logging is enabled. Streaming response bodies are never read
by the hooks.
"""

from __future__ import annotations

import json
import time

from typing import Any

import httpx

from parley.core.constants import get_settings
from parley.utils.logger import logger

REDACTED_HEADERS = frozenset({"authorization", "api-key", "x-api-key", "mcp-session-id"})


def redact_headers(headers: httpx.Headers | dict[str, str]) -> dict[str, str]:
    """Copy of ``headers`` with credentials and session ids masked to their last 4 chars."""
    redacted: dict[str, str] = {}
    for key, value in headers.items():
        if key.lower() in REDACTED_HEADERS:
            value = f"***{value[-4:]}" if len(value) > 8 else "***"
        redacted[key] = value
    return redacted


def summarize_body(content: bytes) -> dict[str, Any]:
    """Loggable fields describing a JSON request body."""
    if not content:
        return {}
    try:
        body = json.loads(content)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return {"body_bytes": len(content)}
    if not isinstance(body, dict):
        return {"body_bytes": len(content)}

    summary: dict[str, Any] = {}
    if "model" in body:
        summary["model"] = body["model"]
        summary["message_count"] = len(body.get("messages") or [])
        summary["tool_count"] = len(body.get("tools") or [])
    if "method" in body:
        summary["rpc_method"] = body["method"]
        if "id" in body:
            summary["rpc_id"] = body["id"]
    return summary


class HTTPLogger:
    """Request and response event hooks for one httpx client."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._started: dict[int, float] = {}

    async def log_request(self, request: httpx.Request) -> None:
        if not self.enabled:
            return
        self._started[id(request)] = time.monotonic()

        try:
            content = request.content
        except httpx.RequestNotRead:
            content = b""
        fields = summarize_body(content)
        logger.debug(
            f"HTTP {request.method} {request.url}",
            http_request=True,
            headers=redact_headers(request.headers),
            **fields,
        )
        if content and get_settings().enable_content_logging:
            logger.debug(f"Request body: {content.decode('utf-8', errors='replace')[:2000]}")

    async def log_response(self, response: httpx.Response) -> None:
        if not self.enabled:
            return
        request = response.request
        started = self._started.pop(id(request), None)
        elapsed_ms = (time.monotonic() - started) * 1000 if started is not None else None

        log = logger.debug if response.is_success else logger.warning
        log(
            f"HTTP {response.status_code} {request.method} {request.url}",
            http_response=True,
            status_code=response.status_code,
            content_type=response.headers.get("content-type", ""),
            elapsed_ms=round(elapsed_ms, 1) if elapsed_ms is not None else None,
        )


def create_logging_client(timeout: httpx.Timeout | None = None) -> httpx.AsyncClient:
    """httpx client with HTTPLogger hooks installed."""
    http_logger = HTTPLogger()
    event_hooks: dict[str, list[Any]] = {
        "request": [http_logger.log_request],
        "response": [http_logger.log_response],
    }
    return httpx.AsyncClient(event_hooks=event_hooks, timeout=timeout)
