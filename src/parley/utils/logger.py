"""
Logging setup for Parley using Python's standard logging
with JSON formatting for structured logs.

Log destinations:
- Console (stderr): Human-readable format for debugging
- logs/turns.jsonl: JSON format for finished turns and tool calls (when log_to_file is enabled)
- logs/errors.jsonl: JSON format for error tracking (when log_to_file is enabled)
"""

from __future__ import annotations

import logging
import logging.handlers
import re
import sys
import uuid

from typing import Any

from pythonjsonlogger import json as jsonlogger

from parley.core.constants import (
    LOG_BACKUP_COUNT_ERRORS,
    LOG_BACKUP_COUNT_TURNS,
    LOG_MAX_SIZE,
    LOG_PREVIEW_LENGTH,
    SESSION_ID_LENGTH,
    get_settings,
)
from parley.utils.turn_context import get_turn_context

# PII Redaction patterns
REDACTION_PATTERNS = [
    (r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b", "[EMAIL]"),
    (r"\b(?:\d{4}[- ]?){3}\d{4}\b", "[CARD]"),
    (r"\b(sk-|pk-|api[-_]?key[-_]?)[A-Za-z0-9]{20,}\b", "[API_KEY]"),
    (r"\b(password|secret|token)\s*[:=]\s*\S+", "[REDACTED]"),
]


class TurnFilter(logging.Filter):
    """Filter to allow all INFO level logs for turns"""

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= logging.INFO


class ErrorFilter(logging.Filter):
    """Filter to only allow ERROR and CRITICAL logs"""

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= logging.ERROR


class ColoredConsoleFormatter(logging.Formatter):
    """
    Custom formatter that adds colors to log levels and standardizes format.
    Format: HH:MM:SS [LEVEL] logger_name - message
    """

    # ANSI color codes
    GREY = "\x1b[38;20m"
    GREEN = "\x1b[32;20m"
    YELLOW = "\x1b[33;20m"
    RED = "\x1b[31;20m"
    BOLD_RED = "\x1b[31;1m"
    RESET = "\x1b[0m"

    LEVEL_COLORS = {
        logging.DEBUG: GREY,
        logging.INFO: GREEN,
        logging.WARNING: YELLOW,
        logging.ERROR: RED,
        logging.CRITICAL: BOLD_RED,
    }

    def format(self, record: logging.LogRecord) -> str:
        level_fmt = f"[{record.levelname}]"
        color = self.LEVEL_COLORS.get(record.levelno)
        if color:
            level_fmt = f"{color}{level_fmt}{self.RESET}"

        record.asctime = self.formatTime(record, "%H:%M:%S")
        message = f"{record.asctime} {level_fmt} {record.name} - {record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def setup_logging(name: str = "parley", debug: bool | None = None) -> logging.Logger:
    """
    Set up logging with console and optional rotating JSON file handlers.

    Args:
        name: Logger name
        debug: Enable debug logging (overrides the debug setting)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)  # Capture all, filter at handler level

    # Remove any existing handlers
    logger.handlers = []

    settings = get_settings()
    if debug is None:
        debug = settings.debug

    # --- Console Handler (Human-readable) ---
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if debug else settings.log_level)
    console_handler.setFormatter(ColoredConsoleFormatter())
    logger.addHandler(console_handler)

    if not settings.log_to_file:
        return logger

    log_dir = settings.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)

    # --- Turn Log Handler (JSON) ---
    turn_handler = logging.handlers.RotatingFileHandler(
        log_dir / "turns.jsonl",
        maxBytes=LOG_MAX_SIZE,
        backupCount=LOG_BACKUP_COUNT_TURNS,
        encoding="utf-8",
    )
    turn_handler.setLevel(logging.INFO)
    turn_handler.addFilter(TurnFilter())
    turn_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(timestamp)s %(levelname)s %(message)s %(session_id)s %(turn_id)s %(conversation_id)s",
            timestamp=True,
        )
    )
    logger.addHandler(turn_handler)

    # --- Error Log Handler (JSON) ---
    error_handler = logging.handlers.RotatingFileHandler(
        log_dir / "errors.jsonl",
        maxBytes=LOG_MAX_SIZE,
        backupCount=LOG_BACKUP_COUNT_ERRORS,
        encoding="utf-8",
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.addFilter(ErrorFilter())
    error_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(timestamp)s %(levelname)s %(name)s %(message)s",
            timestamp=True,
        )
    )
    logger.addHandler(error_handler)

    return logger


class ChatLogger:
    """
    High-level logging interface for Parley.
    Wraps standard Python logging with convenience methods.
    """

    def __init__(self, name: str = "parley"):
        self.logger = setup_logging(name)
        self.session_id = str(uuid.uuid4())[:SESSION_ID_LENGTH]

    def _enrich_context(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        """Enrich log arguments with the current turn context and process session ID."""
        kwargs.setdefault("session_id", self.session_id)
        if ctx := get_turn_context():
            for key, value in ctx.to_log_context().items():
                kwargs.setdefault(key, value)
        return kwargs

    def debug(self, message: str, **kwargs: Any) -> None:
        """Debug level logging"""
        kwargs = self._enrich_context(kwargs)
        self.logger.debug(message, extra=kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        """Info level logging"""
        kwargs = self._enrich_context(kwargs)
        self.logger.info(message, extra=kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        """Warning level logging"""
        kwargs = self._enrich_context(kwargs)
        self.logger.warning(message, extra=kwargs)

    def error(self, message: str, exc_info: bool = False, **kwargs: Any) -> None:
        """Error level logging with optional exception info"""
        kwargs = self._enrich_context(kwargs)
        self.logger.error(message, extra=kwargs, exc_info=exc_info)

    def _should_log_content(self) -> bool:
        """Check if content logging is enabled via settings."""
        return bool(get_settings().enable_content_logging)

    def _redact_content(self, text: str) -> str:
        """Redact PII from text using defined patterns."""
        if not text:
            return text

        redacted = text
        for pattern, replacement in REDACTION_PATTERNS:
            redacted = re.sub(pattern, replacement, redacted)
        return redacted

    def _preview(self, text: str) -> str:
        preview = self._redact_content(text[:LOG_PREVIEW_LENGTH].replace("\n", " "))
        if len(text) > LOG_PREVIEW_LENGTH:
            preview += "..."
        return preview

    def log_turn(
        self,
        participant: str,
        status: str,
        response: str,
        rounds: int = 0,
        tool_calls: int = 0,
        duration_ms: float | None = None,
        tokens_used: int | None = None,
    ) -> None:
        """
        Log one finished participant turn.
        """
        should_log_content = self._should_log_content()
        response_preview = self._preview(response) if should_log_content else "[HIDDEN]"

        msg_parts = [f"{participant} [{status}] → {response_preview}"]
        if tool_calls:
            msg_parts.append(f"[{tool_calls} tools / {rounds} rounds]")
        if duration_ms:
            msg_parts.append(f"[{duration_ms:.0f}ms]")
        if tokens_used:
            msg_parts.append(f"[{tokens_used} tokens]")

        extra_data: dict[str, Any] = {
            "turn_finished": True,
            "status": status,
            "chars_response": len(response),
            "tool_calls": tool_calls,
            "rounds": rounds,
            "content_logging": should_log_content,
        }
        if duration_ms is not None:
            extra_data["ms"] = int(duration_ms)
        if tokens_used is not None:
            extra_data["tokens"] = tokens_used

        extra_data = self._enrich_context(extra_data)
        self.logger.info(" ".join(msg_parts), extra=extra_data)

    def log_tool_call(self, tool_name: str, args: dict[str, Any], result: str, source: str) -> None:
        """
        Log a tool call - secure version.
        """
        should_log_content = self._should_log_content()

        if should_log_content:
            redacted_args = self._redact_content(str(args))
            message = f"Tool call ({source}): {tool_name}({redacted_args}) → {self._preview(result)}"
        else:
            message = f"Tool call ({source}): {tool_name}(...) -> [HIDDEN]"

        extra_data = self._enrich_context(
            {"tool": tool_name, "tool_source": source, "content_logging": should_log_content}
        )
        self.logger.info(message, extra=extra_data)


# Global logger instance
logger = ChatLogger()
