"""
Constants and configuration for Parley.
Centralizes all magic numbers and configuration values.
Includes Pydantic validation for environment variables.
"""

from __future__ import annotations

import threading

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ============================================================================
# Project Paths
# ============================================================================

#: Project root directory (parent of src/)
PROJECT_ROOT = Path(__file__).parent.parent.parent.parent

# ============================================================================
# Generation Configuration
# ============================================================================

#: Upper bound on model -> tool -> model round trips within one participant turn.
#: Reaching it finalizes the turn with the content accumulated so far.
MAX_TOOL_ROUNDS = 5

#: Number of most recent persisted messages loaded as request context.
MAX_HISTORY_MESSAGES = 200

#: Minimum interval between UI streaming snapshots (seconds, one display frame).
FRAME_INTERVAL = 0.016

#: Characters of the final reply copied into the conversation's last_message.
LAST_MESSAGE_PREVIEW_LENGTH = 100

#: Characters of the first user message used as an automatic title.
AUTO_TITLE_LENGTH = 50

#: Title given to conversations that have not been named yet.
DEFAULT_CONVERSATION_TITLE = "New Chat"

#: Synthetic user prompt used for auto-discuss rounds after the first.
AUTO_DISCUSS_CONTINUE_PROMPT = "Continue"

# ============================================================================
# Persistence Configuration
# ============================================================================

#: Fixed cadence of the write-coalescing batch writer (seconds).
BATCH_FLUSH_INTERVAL = 0.18

#: Ceiling for the retry delay of a batch writer whose store keeps failing (seconds).
BATCH_WRITER_MAX_BACKOFF = 5.0

# ============================================================================
# MCP Configuration
# ============================================================================

#: Protocol version sent in the initialize handshake.
MCP_PROTOCOL_VERSION = "2025-03-26"

#: Client identity reported during the MCP handshake.
MCP_CLIENT_NAME = "parley"
MCP_CLIENT_VERSION = "0.1.0"

#: Discovered tool lists are refreshed once older than this (seconds).
MCP_TOOLS_TTL = 300.0

#: Timeout for the initialize handshake (seconds).
MCP_CONNECT_TIMEOUT = 30.0

#: Timeout for tools/list and other short requests (seconds).
MCP_REQUEST_TIMEOUT = 30.0

#: Timeout for tools/call (seconds). Tools may run long.
MCP_CALL_TOOL_TIMEOUT = 120.0

#: Time allowed for a single server's tool discovery when building a request (seconds).
MCP_DISCOVERY_TIMEOUT = 10.0

# ============================================================================
# Context Compression Configuration
# ============================================================================

#: Estimated token count above which old history is summarized.
COMPRESSION_THRESHOLD = 8000

#: Number of most recent conversation messages never summarized.
COMPRESSION_KEEP_RECENT = 6

#: Token limit for the summary completion.
COMPRESSION_MAX_TOKENS = 1000

#: Sampling temperature for the summary completion.
COMPRESSION_TEMPERATURE = 0.2

#: Estimated token cost of one image attachment.
IMAGE_TOKEN_ESTIMATE = 85

#: Estimated token overhead of one chat message.
MESSAGE_TOKEN_OVERHEAD = 4

# ============================================================================
# HTTP Configuration
# ============================================================================

#: Reasoning models can pause 30+ seconds while "thinking" before the first delta.
HTTP_READ_TIMEOUT = 600.0
HTTP_CONNECT_TIMEOUT = 30.0

# ============================================================================
# Logging Configuration
# ============================================================================

#: Maximum size in bytes for log files before rotation (10MB).
LOG_MAX_SIZE = 10 * 1024 * 1024

#: Number of turn log backups to retain during rotation.
LOG_BACKUP_COUNT_TURNS = 5

#: Number of error log backups to retain during rotation.
LOG_BACKUP_COUNT_ERRORS = 3

#: Maximum characters to show in log previews for user input/response.
LOG_PREVIEW_LENGTH = 50

#: Length of the short ids used to tag log lines.
SESSION_ID_LENGTH = 8


class Settings(BaseSettings):
    """Environment settings with validation.

    Values come from (highest priority first) constructor arguments,
    ``PARLEY_*`` environment variables and a ``.env`` file in the working
    directory. Every field has a default so the engine runs unconfigured.
    """

    # Debug and logging
    debug: bool = Field(default=False, description="Enable debug logging")
    log_level: str = Field(default="INFO", description="Console log level")
    log_to_file: bool = Field(default=False, description="Write rotating JSON logs under log_dir")
    log_dir: Path = Field(default=PROJECT_ROOT / "logs", description="Directory for JSON log files")
    http_request_logging: bool = Field(default=False, description="Enable HTTP request/response logging")
    enable_content_logging: bool = Field(
        default=False, description="Include (redacted) message content previews in turn logs"
    )

    # HTTP client timeouts
    http_read_timeout: float = Field(default=HTTP_READ_TIMEOUT, description="HTTP read timeout for streaming (seconds)")

    # Generation
    max_tool_rounds: int = Field(default=MAX_TOOL_ROUNDS, description="Maximum tool-call rounds per turn")
    max_history_messages: int = Field(default=MAX_HISTORY_MESSAGES, description="Messages loaded as context")
    frame_interval: float = Field(default=FRAME_INTERVAL, description="Streaming UI update interval (seconds)")

    # Persistence
    batch_flush_interval: float = Field(default=BATCH_FLUSH_INTERVAL, description="Batch writer cadence (seconds)")
    batch_writer_max_backoff: float = Field(
        default=BATCH_WRITER_MAX_BACKOFF, description="Maximum batch writer retry delay (seconds)"
    )

    # MCP
    mcp_tools_ttl: float = Field(default=MCP_TOOLS_TTL, description="Tool discovery cache lifetime (seconds)")
    mcp_connect_timeout: float = Field(default=MCP_CONNECT_TIMEOUT, description="MCP handshake timeout (seconds)")
    mcp_request_timeout: float = Field(default=MCP_REQUEST_TIMEOUT, description="MCP request timeout (seconds)")
    mcp_call_tool_timeout: float = Field(default=MCP_CALL_TOOL_TIMEOUT, description="MCP tool call timeout (seconds)")

    # Context compression
    context_compression_enabled: bool = Field(default=True, description="Summarize old history when large")
    compression_threshold: int = Field(default=COMPRESSION_THRESHOLD, description="Token estimate threshold")
    compression_keep_recent: int = Field(default=COMPRESSION_KEEP_RECENT, description="Messages never summarized")

    model_config = SettingsConfigDict(
        env_prefix="PARLEY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v: str | None) -> str:
        """Normalize and validate the console log level."""
        if v is None:
            return "INFO"
        normalized = str(v).upper()
        if normalized not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"log_level must be a standard logging level, got '{v}'")
        return normalized

    @field_validator("max_tool_rounds", "max_history_messages", "compression_keep_recent")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator(
        "frame_interval",
        "batch_flush_interval",
        "batch_writer_max_backoff",
        "http_read_timeout",
        "mcp_tools_ttl",
        "mcp_connect_timeout",
        "mcp_request_timeout",
        "mcp_call_tool_timeout",
    )
    @classmethod
    def validate_positive_float(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be greater than 0")
        return v


# ============================================================================
# Settings Management (Thread-safe)
# ============================================================================


class _SettingsManager:
    """Thread-safe settings manager.

    Uses a class to avoid global statement warnings from linters.
    """

    __slots__ = ("_instance", "_lock")

    def __init__(self) -> None:
        self._instance: Settings | None = None
        self._lock = threading.Lock()

    def get(self) -> Settings:
        """Get the cached settings instance, loading it on first use.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self._instance is not None:
            return self._instance

        with self._lock:
            # Double-check after acquiring lock
            if self._instance is None:
                self._instance = Settings()
            return self._instance

    def reload(self) -> Settings:
        """Force reload settings from the environment."""
        with self._lock:
            self._instance = Settings()
            return self._instance

    def clear(self) -> None:
        """Clear cached settings instance.

        Primarily useful for testing to ensure fresh settings on each test.
        """
        with self._lock:
            self._instance = None


# Module-level singleton manager
_settings_manager = _SettingsManager()


def get_settings() -> Settings:
    """Get settings instance.

    This is the primary entry point for accessing configuration.
    Settings are validated on first access and cached.

    Returns:
        Validated Settings instance.

    Raises:
        ValueError: If configuration is invalid.
    """
    return _settings_manager.get()


def reload_settings() -> Settings:
    """Force reload settings from the environment.

    Returns:
        Fresh Settings instance loaded from current environment.
    """
    return _settings_manager.reload()


def clear_settings_cache() -> None:
    """Clear cached settings instance."""
    _settings_manager.clear()
