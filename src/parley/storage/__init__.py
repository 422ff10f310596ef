"""
Storage Layer - Message store protocol, catalog and write coalescing
=====================================================================

Modules:
    message_store: MessageStore protocol and the in-memory implementation
    batch_writer: Coalesces high-frequency streaming patches into periodic writes
    catalog: Read-only lookup of providers, models, personas and MCP servers
"""
