"""
Models Module - Pydantic and dataclass models for Parley
=========================================================

Modules:
    chat_models: Messages, conversations, participants, personas, providers
    mcp_models: MCP server configuration, tools, results and call outcomes
    stream_models: Normalized streaming deltas produced by the SSE consumer
"""
