"""
Exception hierarchy for Parley.

Frame-level problems (a malformed SSE line, unparseable tool arguments) are
recovered where they occur and never raise. Everything that does raise derives
from ParleyError so collaborators can catch the engine's failures as one family.
"""

from __future__ import annotations


class ParleyError(Exception):
    """Base exception for all engine errors."""

    pass


# ============================================================================
# Upstream LLM
# ============================================================================


class LLMRequestError(ParleyError):
    """Chat completion endpoint answered with a non-OK status or no body."""

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"API error ({status_code}): {body}" if body else f"API error ({status_code})")


# ============================================================================
# MCP
# ============================================================================


class MCPError(ParleyError):
    """Base exception for MCP protocol failures."""

    pass


class MCPTransportError(MCPError):
    """HTTP-level failure talking to an MCP server."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class MCPRequestError(MCPError):
    """Server answered a JSON-RPC request with an error object."""

    def __init__(self, code: int | None, message: str, data: object | None = None) -> None:
        self.code = code
        self.data = data
        super().__init__(f"MCP error {code}: {message}" if code is not None else f"MCP error: {message}")


class MCPTimeoutError(MCPError):
    """A JSON-RPC request received no response in time."""

    pass


class MCPNotConnectedError(MCPError):
    """Operation attempted on a client that has not completed its handshake."""

    pass


# ============================================================================
# Persistence
# ============================================================================


class PersistenceError(ParleyError):
    """Base exception for persistence errors."""

    pass


class MessageNotFoundError(PersistenceError):
    """No message with the requested id exists."""

    pass


class ConversationNotFoundError(PersistenceError):
    """No conversation with the requested id exists."""

    pass


class MessageImmutableError(PersistenceError):
    """Patch targeted a message whose status already left streaming."""

    pass


# ============================================================================
# Catalog
# ============================================================================


class CatalogLookupError(ParleyError, LookupError):
    """A participant refers to a model, provider or persona the catalog does not know."""

    pass


# ============================================================================
# Generation
# ============================================================================


class GenerationInProgressError(ParleyError):
    """A turn is already running for this conversation."""

    pass


class OperationCancelledError(ParleyError):
    """Raised when a cancellation token fires during a guarded operation."""

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason
        super().__init__(reason or "Cancellation requested")


__all__ = [
    "CatalogLookupError",
    "ConversationNotFoundError",
    "GenerationInProgressError",
    "LLMRequestError",
    "MCPError",
    "MCPNotConnectedError",
    "MCPRequestError",
    "MCPTimeoutError",
    "MCPTransportError",
    "MessageImmutableError",
    "MessageNotFoundError",
    "OperationCancelledError",
    "ParleyError",
    "PersistenceError",
]
