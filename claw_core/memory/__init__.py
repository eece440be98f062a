"""
Conversation memory and multi-session management.

Usage:
    from claw_core.memory import SessionManager

    sessions = SessionManager("./.claw/memory")
    memory = sessions.get_memory(sessions.get_active_key())
    memory.add_message({"role": "user", "content": "hi"})
    memory.persist()
"""

from .store import (
    Memory,
    MemoryData,
    MemorySummary,
    LongTermMemory,
    estimate_tokens,
)
from .sessions import (
    SessionManager,
    SessionInfo,
    DEFAULT_SESSION_KEY,
)

__all__ = [
    "Memory",
    "MemoryData",
    "MemorySummary",
    "LongTermMemory",
    "estimate_tokens",
    "SessionManager",
    "SessionInfo",
    "DEFAULT_SESSION_KEY",
]
