"""
Integrations Layer - Upstream LLM endpoints and MCP servers
============================================================

Modules:
    sse_consumer: SSE framing to normalized streaming deltas, <think> scanner
    llm_client: OpenAI-compatible chat completions over httpx
    mcp_transport: MCP Streamable HTTP transport and event-stream parser
    mcp_client: JSON-RPC client with handshake and tool calls
    mcp_manager: One live client per server, tool cache, failure classification
"""
