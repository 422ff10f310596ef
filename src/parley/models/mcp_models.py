"""
Pydantic models for MCP (Model Context Protocol).

These models provide type safety for:
- Server configuration (McpServerConfig)
- Tool definitions (MCPTool)
- Tool execution results (MCPResult)
- Normalized call outcomes surfaced to the orchestrator (ToolCallOutcome)
"""

from __future__ import annotations

import json

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class McpServerConfig(BaseModel):
    """A remote MCP server reachable over Streamable HTTP."""

    id: str
    name: str = ""
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True
    disabled_tools: list[str] = Field(default_factory=list)

    @property
    def label(self) -> str:
        return self.name or self.id


class MCPTool(BaseModel):
    """Model for an MCP tool definition.

    Represents a tool available on an MCP server.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str
    description: str | None = None
    inputSchema: dict[str, Any] = Field(default_factory=dict)

    def to_openai_tool(self) -> dict[str, Any]:
        """Render as an OpenAI chat-completions function tool."""
        parameters = self.inputSchema or {"type": "object", "properties": {}}
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description or "",
                "parameters": parameters,
            },
        }


class MCPResult(BaseModel):
    """Model for an MCP tool execution result (``tools/call`` result)."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    content: list[dict[str, Any] | str] = Field(default_factory=list)
    structuredContent: dict[str, Any] | None = None
    isError: bool = False

    @property
    def parts_text(self) -> str:
        """Content parts joined by newlines; non-text parts are rendered as compact JSON."""
        rendered: list[str] = []
        for part in self.content:
            if isinstance(part, str):
                rendered.append(part)
            elif part.get("type") == "text":
                rendered.append(str(part.get("text") or ""))
            else:
                rendered.append(json.dumps(part, separators=(",", ":"), ensure_ascii=False))
        return "\n".join(rendered)

    @property
    def text(self) -> str:
        """Tool output for the model, falling back to the whole result as JSON when the parts are empty."""
        return self.parts_text or self.model_dump_json(exclude_none=True)


class McpErrorCode(str, Enum):
    """Failure buckets used for user-facing messaging."""

    AUTH = "AUTH"
    TIMEOUT = "TIMEOUT"
    SERVER_ERROR = "SERVER_ERROR"
    NETWORK = "NETWORK"
    UNKNOWN = "UNKNOWN"


class ToolCallOutcome(BaseModel):
    """Structured result of calling a remote tool."""

    success: bool
    content: str = ""
    error: str | None = None
    error_code: McpErrorCode | None = None


class ConnectionStatus(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
