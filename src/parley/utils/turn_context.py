"""
Turn-scoped logging context for Parley.

Carries the ids of the turn being generated through the async call stack so
every log line emitted while a participant is replying can be correlated
without passing ids through each function.
"""

from __future__ import annotations

import contextlib
import secrets
import time

from collections.abc import Iterator
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any

# Context variable for turn-scoped data
_turn_context: ContextVar[TurnContext | None] = ContextVar("turn_context", default=None)

# Turn ID prefix for easy identification in logs
TURN_ID_PREFIX = "turn_"


@dataclass
class TurnContext:
    """Turn-scoped context for tracking and logging."""

    turn_id: str
    conversation_id: str
    start_time: float = field(default_factory=time.monotonic)
    participant_id: str | None = None
    message_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def elapsed_ms(self) -> float:
        """Get elapsed time since turn start in milliseconds."""
        return (time.monotonic() - self.start_time) * 1000

    def to_log_context(self) -> dict[str, Any]:
        """Get context dict for logging."""
        ctx: dict[str, Any] = {
            "turn_id": self.turn_id,
            "conversation_id": self.conversation_id,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }
        if self.participant_id:
            ctx["participant_id"] = self.participant_id
        if self.message_id:
            ctx["message_id"] = self.message_id
        ctx.update(self.extra)
        return ctx


def generate_turn_id(prefix: str = TURN_ID_PREFIX) -> str:
    """Generate a unique turn ID.

    Format: prefix + 16 hex characters (64 bits of entropy)
    Example: turn_a1b2c3d4e5f6a7b8
    """
    return f"{prefix}{secrets.token_hex(8)}"


def get_turn_context() -> TurnContext | None:
    """Get the current turn context, or None outside of a turn."""
    return _turn_context.get()


def update_turn_context(**kwargs: Any) -> None:
    """Update fields in the current turn context.

    Common usage:
        update_turn_context(participant_id="p_1", message_id="m_2")
    """
    ctx = get_turn_context()
    if ctx:
        for key, value in kwargs.items():
            if hasattr(ctx, key):
                setattr(ctx, key, value)
            else:
                ctx.extra[key] = value


@contextlib.contextmanager
def turn_context(conversation_id: str, **kwargs: Any) -> Iterator[TurnContext]:
    """Bind a fresh TurnContext for the duration of the block."""
    ctx = TurnContext(turn_id=generate_turn_id(), conversation_id=conversation_id, **kwargs)
    token = _turn_context.set(ctx)
    try:
        yield ctx
    finally:
        _turn_context.reset(token)
