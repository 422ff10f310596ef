"""
Tool call routing.

A tool name resolves against the built-in registry first (when the tool is
globally enabled or on the persona's allow-list), then against the MCP
servers the persona may use. Every call produces a string fed back to the
model. Failures and unknown names never raise.
"""

from __future__ import annotations

import json

from typing import Any

from parley.integrations.mcp_manager import McpConnectionManager
from parley.models.chat_models import Persona, ToolCall
from parley.storage.catalog import Catalog
from parley.tools.builtin import BuiltinToolRegistry
from parley.utils.logger import logger


def parse_tool_arguments(arguments: str) -> dict[str, Any]:
    """Decode a tool call's JSON arguments, falling back to ``{}``."""
    if not arguments or not arguments.strip():
        return {}
    try:
        parsed = json.loads(arguments)
    except json.JSONDecodeError:
        logger.debug(f"Unparseable tool arguments: {arguments[:100]}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


class ToolExecutor:
    """Resolves tool definitions and executes tool calls for one persona at a time."""

    def __init__(self, catalog: Catalog, registry: BuiltinToolRegistry, mcp_manager: McpConnectionManager):
        self.catalog = catalog
        self.registry = registry
        self.mcp_manager = mcp_manager

    def enabled_builtin_tools(self, persona: Persona | None) -> list[str]:
        """Built-in tool names available to ``persona``."""
        enabled = self.catalog.enabled_builtin_tools
        names = set(self.registry.default_enabled() if enabled is None else enabled)
        if persona is not None:
            names.update(persona.builtin_tool_ids)
        return [name for name in self.registry.names if name in names]

    @staticmethod
    def allowed_server_ids(persona: Persona | None) -> list[str] | None:
        return persona.mcp_server_ids if persona is not None and persona.mcp_server_ids else None

    async def tool_definitions(self, persona: Persona | None) -> list[dict[str, Any]]:
        """OpenAI tool definitions offered to ``persona``: built-ins first, then MCP."""
        definitions = self.registry.definitions(self.enabled_builtin_tools(persona))
        builtin_names = {d["function"]["name"] for d in definitions}
        remote = await self.mcp_manager.get_tool_definitions(
            self.catalog.mcp_servers, self.allowed_server_ids(persona)
        )
        definitions.extend(d for d in remote if d["function"]["name"] not in builtin_names)
        return definitions

    async def execute(self, tool_call: ToolCall, persona: Persona | None) -> str:
        """Run one tool call and return the text fed back to the model."""
        name = tool_call.name
        args = parse_tool_arguments(tool_call.arguments)

        if name in self.enabled_builtin_tools(persona):
            local = await self.registry.execute(name, args)
            if local is not None:
                content = local.content if local.success else f"Error: {local.error}"
                logger.log_tool_call(name, args, content, source="builtin")
                return content

        remote = await self.mcp_manager.execute_tool(
            self.catalog.mcp_servers, name, args, self.allowed_server_ids(persona)
        )
        if remote is not None:
            content = remote.content if remote.success else f"Error: {remote.error}"
            logger.log_tool_call(name, args, content, source="mcp")
            return content

        logger.warning(f"Tool not found: {name}")
        return f"Tool not found: {name}"
