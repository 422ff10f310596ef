"""
Services Layer - Turn orchestration
===================================

Modules:
    mentions: @name parsing for group conversations
    message_builder: Roster, persona prompts and history relabeling
    tool_executor: Routes tool calls to local tools or MCP servers
    context_compression: Token estimation and summarization of old history
    generation: Per-participant turn state machine
    chat_service: Turn controller owning one generation context per conversation
"""
