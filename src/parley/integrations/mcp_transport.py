"""
MCP Transport Layer.

Implements the MCP Streamable HTTP transport:

- Every outbound JSON-RPC message is a POST with a JSON body.
- ``202 Accepted`` acknowledges a notification. Once the session's
  ``notifications/initialized`` is accepted, a long-lived GET with
  ``Accept: text/event-stream`` is opened for server-pushed messages.
- Synchronous answers arrive as JSON (one message or a batch) or as an
  event stream and are dispatched in place.
- ``mcp-session-id`` from a response and the negotiated
  ``mcp-protocol-version`` are attached to every later request.

Inbound messages, errors and the final close are published on a single
event channel (``events()``) instead of callbacks.
"""

from __future__ import annotations

import asyncio
import codecs
import json

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Literal

import httpx

from parley.core.constants import HTTP_CONNECT_TIMEOUT
from parley.core.exceptions import MCPNotConnectedError, MCPTransportError
from parley.models.mcp_models import McpServerConfig
from parley.utils.client_factory import create_http_client
from parley.utils.logger import logger

SESSION_ID_HEADER = "mcp-session-id"
PROTOCOL_VERSION_HEADER = "mcp-protocol-version"
INITIALIZED_NOTIFICATION = "notifications/initialized"

JSONRPCMessage = dict[str, Any]


@dataclass(slots=True)
class TransportEvent:
    """One item on a transport's event channel."""

    kind: Literal["message", "error", "close"]
    message: JSONRPCMessage | None = None
    error: Exception | None = None


# ============================================================================
# SSE framing
# ============================================================================


@dataclass(slots=True)
class SSEEvent:
    data: str
    event: str | None = None
    id: str | None = None


class EventSourceParser:
    """Incremental ``text/event-stream`` parser.

    Line endings ``\\r\\n``, ``\\r`` and ``\\n`` are all accepted. Comment lines
    (``:ping``) are ignored, repeated ``data`` fields are joined with a newline,
    and an event is dispatched on the blank line that ends its block. Partial
    lines and partially received events carry over between feed() calls.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._pending_cr = False
        self._data: list[str] = []
        self._event: str | None = None
        self._id: str | None = None

    def feed(self, chunk: str) -> list[SSEEvent]:
        if self._pending_cr:
            chunk = "\r" + chunk
            self._pending_cr = False
        # A trailing \r may be the first half of \r\n
        if chunk.endswith("\r"):
            chunk = chunk[:-1]
            self._pending_cr = True

        text = self._buffer + chunk.replace("\r\n", "\n").replace("\r", "\n")
        *lines, self._buffer = text.split("\n")

        events: list[SSEEvent] = []
        for line in lines:
            event = self._process_line(line)
            if event is not None:
                events.append(event)
        return events

    def close(self) -> list[SSEEvent]:
        """Flush at end of stream, dispatching an unterminated final event."""
        events = self.feed("\n") if self._buffer or self._pending_cr else []
        self._pending_cr = False
        event = self._dispatch()
        if event is not None:
            events.append(event)
        return events

    def _process_line(self, line: str) -> SSEEvent | None:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            self._id = value
        return None

    def _dispatch(self) -> SSEEvent | None:
        data = "\n".join(self._data)
        event_type = self._event
        self._data = []
        self._event = None
        # Blocks without data (or with only empty data lines) are not events
        if not data:
            return None
        return SSEEvent(data=data, event=event_type or None, id=self._id)


# ============================================================================
# Transports
# ============================================================================


class MCPTransport(ABC):
    """Abstract base for MCP client transports."""

    @abstractmethod
    async def start(self) -> None:
        """Prepare the transport for sending."""

    @abstractmethod
    async def send(self, message: JSONRPCMessage) -> None:
        """Send one JSON-RPC request or notification."""

    @abstractmethod
    async def close(self) -> None:
        """Abort outstanding work and publish a close event."""

    @abstractmethod
    def events(self) -> AsyncIterator[TransportEvent]:
        """Iterate inbound messages, errors and the final close."""

    @property
    @abstractmethod
    def session_id(self) -> str | None:
        """Server-assigned session id, once known."""

    @abstractmethod
    def set_protocol_version(self, version: str) -> None:
        """Record the negotiated protocol version for later requests."""


class StreamableHTTPTransport(MCPTransport):
    """MCP Streamable HTTP client transport over httpx."""

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
        session_id: str | None = None,
    ):
        """Initialize the transport.

        Args:
            url: MCP endpoint URL
            headers: Extra headers sent with every request (e.g. auth)
            client: Shared httpx client; one is created (and owned) if omitted
            session_id: Resume an existing session
        """
        self.url = url
        self._headers = dict(headers or {})
        self._client = client or create_http_client()
        self._owns_client = client is None
        self._session_id = session_id
        self._protocol_version: str | None = None

        self._events: asyncio.Queue[TransportEvent] = asyncio.Queue()
        self._requests: set[asyncio.Task[None]] = set()
        self._push_task: asyncio.Task[None] | None = None
        self._started = False
        self._closed = False
        self._listening = False

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def protocol_version(self) -> str | None:
        return self._protocol_version

    def set_protocol_version(self, version: str) -> None:
        self._protocol_version = version

    async def start(self) -> None:
        if self._started:
            raise MCPTransportError("Transport already started")
        self._started = True

    async def events(self) -> AsyncIterator[TransportEvent]:
        self._listening = True
        try:
            while True:
                event = await self._events.get()
                yield event
                if event.kind == "close":
                    return
        finally:
            self._listening = False

    async def send(self, message: JSONRPCMessage) -> None:
        """POST one message, dispatching any synchronous answer to the channel.

        Raises:
            MCPNotConnectedError: If the transport is not started or already closed
            MCPTransportError: On a non-OK status or malformed response
        """
        if not self._started or self._closed:
            raise MCPNotConnectedError("Transport is not open")

        request = asyncio.ensure_future(self._post(message))
        self._requests.add(request)
        try:
            await request
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if self._closed and current is not None and not current.cancelling():
                raise MCPTransportError("Transport closed") from None
            raise
        except Exception as e:
            self._publish_error(e)
            raise
        finally:
            self._requests.discard(request)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        pending = [task for task in (self._push_task, *self._requests) if task is not None and not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._push_task = None

        if self._owns_client:
            await self._client.aclose()

        self._events.put_nowait(TransportEvent(kind="close"))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _common_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self._session_id:
            headers[SESSION_ID_HEADER] = self._session_id
        if self._protocol_version:
            headers[PROTOCOL_VERSION_HEADER] = self._protocol_version
        headers.update(self._headers)
        return headers

    async def _post(self, message: JSONRPCMessage) -> None:
        headers = self._common_headers()
        headers["Content-Type"] = "application/json"
        headers["Accept"] = "application/json, text/event-stream"

        async with self._client.stream("POST", self.url, headers=headers, json=message) as response:
            session_id = response.headers.get(SESSION_ID_HEADER)
            if session_id:
                self._session_id = session_id

            if not response.is_success:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise MCPTransportError(f"HTTP {response.status_code}: {body}", status_code=response.status_code)

            if response.status_code == 202:
                if message.get("method") == INITIALIZED_NOTIFICATION:
                    self._open_push_channel()
                return

            content_type = response.headers.get("content-type", "")
            if "text/event-stream" in content_type:
                await self._consume_event_stream(response)
                return

            text = (await response.aread()).decode("utf-8", errors="replace")
            if not text.strip():
                return

            if "application/json" in content_type:
                data = json.loads(text)
                for item in data if isinstance(data, list) else [data]:
                    self._publish_message(_validate_message(item))
                return

            # Lenient fallback for servers that omit the content type
            data_line = next((line for line in text.split("\n") if line.startswith("data:")), None)
            if data_line is not None:
                self._publish_message(_validate_message(json.loads(data_line[5:].strip())))

    def _open_push_channel(self) -> None:
        if self._push_task is None or self._push_task.done():
            self._push_task = asyncio.create_task(self._run_push_channel())

    async def _run_push_channel(self) -> None:
        headers = self._common_headers()
        headers["Accept"] = "text/event-stream"
        timeout = httpx.Timeout(HTTP_CONNECT_TIMEOUT, read=None)
        try:
            async with self._client.stream("GET", self.url, headers=headers, timeout=timeout) as response:
                if response.status_code == 405:
                    logger.debug(f"MCP server at {self.url} offers no push channel")
                    return
                if not response.is_success:
                    raise MCPTransportError(
                        f"Failed to open SSE stream: HTTP {response.status_code}", status_code=response.status_code
                    )
                await self._consume_event_stream(response)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._publish_error(e)

    async def _consume_event_stream(self, response: httpx.Response) -> None:
        parser = EventSourceParser()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        async for chunk in response.aiter_bytes():
            for event in parser.feed(decoder.decode(chunk)):
                self._dispatch_event(event)
        tail = parser.feed(decoder.decode(b"", final=True))
        for event in [*tail, *parser.close()]:
            self._dispatch_event(event)

    def _dispatch_event(self, event: SSEEvent) -> None:
        if event.event not in (None, "message"):
            return
        try:
            self._publish_message(_validate_message(json.loads(event.data)))
        except (json.JSONDecodeError, MCPTransportError) as e:
            self._publish_error(e)

    def _publish_message(self, message: JSONRPCMessage) -> None:
        self._events.put_nowait(TransportEvent(kind="message", message=message))

    def _publish_error(self, error: Exception) -> None:
        if self._listening:
            logger.debug(f"MCP transport error ({self.url}): {error}")
        else:
            logger.warning(f"MCP transport error ({self.url}): {error}")
        self._events.put_nowait(TransportEvent(kind="error", error=error))


def _validate_message(data: Any) -> JSONRPCMessage:
    if not isinstance(data, dict) or data.get("jsonrpc") != "2.0":
        raise MCPTransportError(f"Invalid JSON-RPC message: {str(data)[:200]}")
    return data


def create_transport(config: McpServerConfig, client: httpx.AsyncClient | None = None) -> MCPTransport:
    """Factory function to create the transport for a server config.

    Args:
        config: Server configuration
        client: Optional shared httpx client

    Returns:
        MCPTransport instance (Streamable HTTP)

    Raises:
        ValueError: If the server URL is not HTTP(S)
    """
    if not config.url.startswith(("http://", "https://")):
        raise ValueError(f"Unsupported MCP server URL for {config.label}: {config.url}")
    return StreamableHTTPTransport(url=config.url, headers=config.headers, client=client)
