"""
Built-in tools.

Local functions offered to models as OpenAI function tools. A tool is
offered when it is globally enabled or on the persona's allow-list, and is
always executed in-process before any MCP server is consulted.
"""

from __future__ import annotations

import inspect

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel

from parley.utils.logger import logger

ToolHandler = Callable[[dict[str, Any]], "LocalToolResult | Awaitable[LocalToolResult]"]


class LocalToolResult(BaseModel):
    """Outcome of a local tool execution."""

    success: bool
    content: str = ""
    error: str | None = None


class CurrentTimeResponse(BaseModel):
    """Response from get_current_time."""

    date: str
    time: str
    timezone: str
    utc_offset: str
    day_of_week: str
    timestamp: str

    def to_json(self, indent: int = 2) -> str:
        """Convert to JSON string for function return."""
        return self.model_dump_json(exclude_none=True, indent=indent)


def get_current_time(args: dict[str, Any]) -> LocalToolResult:
    """Current date and time, in the requested IANA timezone or the local one."""
    timezone_name = args.get("timezone")
    if timezone_name:
        try:
            now = datetime.now(ZoneInfo(str(timezone_name)))
        except (ZoneInfoNotFoundError, ValueError):
            return LocalToolResult(success=False, error=f"Unknown timezone: {timezone_name}")
    else:
        now = datetime.now().astimezone()

    offset = now.strftime("%z")
    response = CurrentTimeResponse(
        date=now.date().isoformat(),
        time=now.strftime("%H:%M:%S"),
        timezone=str(timezone_name) if timezone_name else (now.tzname() or "local"),
        utc_offset=f"UTC{offset[:3]}:{offset[3:]}" if offset else "UTC",
        day_of_week=now.strftime("%A"),
        timestamp=now.isoformat(),
    )
    return LocalToolResult(success=True, content=response.to_json())


@dataclass
class BuiltinTool:
    name: str
    description: str
    handler: ToolHandler
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    enabled_by_default: bool = True

    def to_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": self.parameters},
        }


class BuiltinToolRegistry:
    """Registry of local tools keyed by name."""

    def __init__(self, tools: list[BuiltinTool] | None = None):
        self._tools: dict[str, BuiltinTool] = {}
        for tool in tools if tools is not None else default_tools():
            self.register(tool)

    def register(self, tool: BuiltinTool) -> None:
        self._tools[tool.name] = tool

    def has(self, name: str) -> bool:
        return name in self._tools

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def default_enabled(self) -> list[str]:
        return [tool.name for tool in self._tools.values() if tool.enabled_by_default]

    def definitions(self, enabled_ids: list[str]) -> list[dict[str, Any]]:
        """OpenAI function-tool definitions for the enabled tools, in registry order."""
        enabled = set(enabled_ids)
        return [tool.to_openai_tool() for tool in self._tools.values() if tool.name in enabled]

    async def execute(self, name: str, args: dict[str, Any]) -> LocalToolResult | None:
        """Run a tool by name.

        Returns:
            The tool's result, a failed result if the handler raised, or None
            if no tool has that name
        """
        tool = self._tools.get(name)
        if tool is None:
            return None
        try:
            result = tool.handler(args)
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as e:
            logger.warning(f"Built-in tool {name} failed: {e}")
            return LocalToolResult(success=False, error=str(e) or "Tool execution failed")


def default_tools() -> list[BuiltinTool]:
    return [
        BuiltinTool(
            name="get_current_time",
            description=(
                "Get current date/time. Only call when the user explicitly asks about the current time, "
                "date, or timezone."
            ),
            handler=get_current_time,
            parameters={
                "type": "object",
                "properties": {
                    "timezone": {
                        "type": "string",
                        "description": "IANA timezone name such as Europe/Berlin (default: local time)",
                    }
                },
            },
        ),
    ]
