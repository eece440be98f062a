"""
MEMORY_STORE
============

Per-session conversation memory with token-budgeted recall.

One ``Memory`` belongs to exactly one session directory::

    {session_dir}/
    ├── memory.json          # Snapshot of the whole Memory (rewritten on persist)
    └── 2026-10-18.jsonl     # Daily append-only message log (UTC date)

Short-term memory
-----------------
Every accepted message is appended to an in-memory list AND to the daily
log straight away; the snapshot is only rewritten by ``persist()`` and only
when something changed (dirty flag). Reads never touch disk after load.

``get_recent_context`` walks the list newest-first summing an estimated
token size and stops at the first message that would exceed the budget;
the kept messages are returned oldest-first. Older messages drop out of
the model's window but stay in the snapshot and the daily log.

Long-term memory
----------------
Three deduplicated string lists (facts, skills, relationships) rendered by
``get_long_term_context`` into the system prompt.

Crash safety
------------
The snapshot is written to a temporary file in the same directory and
moved over ``memory.json`` with ``os.replace``; an interrupted write
leaves the previous snapshot intact. A snapshot that fails to parse is
logged and ignored. Image parts never reach disk.
"""

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..llm.messages import Message, drop_orphan_tool_messages, without_images

logger = logging.getLogger(__name__)

SNAPSHOT_FILE = "memory.json"
COMPACT_THRESHOLD = 20
COMPACT_KEEP = 10
CHARS_PER_TOKEN = 4

SizeEstimator = Callable[[Message], float]
Summarizer = Callable[[List[Message]], str]


def estimate_tokens(message: Message) -> float:
    """Approximate token count: serialized JSON length / 4."""
    return len(json.dumps(message, ensure_ascii=False)) / CHARS_PER_TOKEN


def _now_ms() -> int:
    return int(time.time() * 1000)


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to ``path`` via a temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class LongTermMemory:
    facts: List[str] = field(default_factory=list)
    skills: List[str] = field(default_factory=list)
    relationships: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, List[str]]:
        return {
            "facts": list(self.facts),
            "skills": list(self.skills),
            "relationships": list(self.relationships),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LongTermMemory":
        return cls(
            facts=list(data.get("facts", [])),
            skills=list(data.get("skills", [])),
            relationships=list(data.get("relationships", [])),
        )


@dataclass
class MemoryData:
    """Everything a snapshot holds. Timestamps are epoch milliseconds."""
    short_term: List[Message] = field(default_factory=list)
    long_term: LongTermMemory = field(default_factory=LongTermMemory)
    task_state: Dict[str, Any] = field(default_factory=dict)
    last_activity: int = field(default_factory=_now_ms)
    created: int = field(default_factory=_now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "short_term": self.short_term,
            "long_term": self.long_term.to_dict(),
            "task_state": self.task_state,
            "last_activity": self.last_activity,
            "created": self.created,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryData":
        # camelCase keys are accepted for snapshots written by older agents
        now = _now_ms()
        return cls(
            short_term=list(data.get("short_term", data.get("shortTerm", []))),
            long_term=LongTermMemory.from_dict(data.get("long_term", data.get("longTerm", {})) or {}),
            task_state=dict(data.get("task_state", data.get("taskState", {})) or {}),
            last_activity=int(data.get("last_activity", data.get("lastActivity", now))),
            created=int(data.get("created", now)),
        )


@dataclass
class MemorySummary:
    short_term_messages: int
    long_term_facts: int
    long_term_skills: int
    long_term_relationships: int
    last_activity: datetime
    created: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "short_term_messages": self.short_term_messages,
            "long_term_facts": self.long_term_facts,
            "long_term_skills": self.long_term_skills,
            "long_term_relationships": self.long_term_relationships,
            "last_activity": self.last_activity.isoformat(),
            "created": self.created.isoformat(),
        }


# ============================================================================
# MEMORY
# ============================================================================

class Memory:
    """
    Conversation memory for one session.

    Args:
        persist_path: Session directory (created on first write)
        max_context_tokens: Default budget for ``get_recent_context``
        size_estimator: Message -> approximate tokens (default ``estimate_tokens``)
        clock: Returns epoch seconds
    """

    def __init__(
        self,
        persist_path: str,
        max_context_tokens: int = 8000,
        size_estimator: Optional[SizeEstimator] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.persist_path = Path(persist_path)
        self.max_context_tokens = max_context_tokens
        self.size_estimator = size_estimator or estimate_tokens
        self._clock = clock
        self._dirty = False
        self.data = self._load()

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @property
    def snapshot_path(self) -> Path:
        return self.persist_path / SNAPSHOT_FILE

    def _load(self) -> MemoryData:
        path = self.snapshot_path
        if not path.exists():
            now = self._now_ms()
            return MemoryData(last_activity=now, created=now)
        try:
            return MemoryData.from_dict(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, OSError, TypeError, ValueError, AttributeError) as e:
            logger.warning("Ignoring unreadable memory snapshot %s: %s", path, e)
            now = self._now_ms()
            return MemoryData(last_activity=now, created=now)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @property
    def is_dirty(self) -> bool:
        return self._dirty

    def persist(self) -> bool:
        """Write the snapshot if anything changed. Returns True if written."""
        if not self._dirty:
            return False
        atomic_write_text(self.snapshot_path, json.dumps(self.data.to_dict(), indent=2, ensure_ascii=False))
        self._dirty = False
        logger.debug("Persisted memory snapshot %s", self.snapshot_path)
        return True

    def daily_log_path(self, when_ms: Optional[int] = None) -> Path:
        when_ms = self._now_ms() if when_ms is None else when_ms
        date = datetime.fromtimestamp(when_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")
        return self.persist_path / f"{date}.jsonl"

    def _log_to_daily(self, message: Message, when_ms: int) -> None:
        path = self.daily_log_path(when_ms)
        path.parent.mkdir(parents=True, exist_ok=True)
        record = {"timestamp": when_ms, **message}
        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False) + "\n")

    # ------------------------------------------------------------------
    # Short-term
    # ------------------------------------------------------------------

    def add_message(self, message: Message) -> None:
        """Accept a message: append to short-term and to today's log."""
        stored = without_images(message)
        now = self._now_ms()
        self.data.short_term.append(stored)
        self.data.last_activity = now
        self._dirty = True
        self._log_to_daily(stored, now)

    def get_recent_context(self, max_tokens: Optional[int] = None) -> List[Message]:
        """Newest messages that fit in ``max_tokens``, in chronological order."""
        budget = max_tokens if max_tokens is not None else self.max_context_tokens
        selected: List[Message] = []
        used = 0.0

        for message in reversed(self.data.short_term):
            size = self.size_estimator(message)
            if used + size > budget:
                break
            selected.append(message)
            used += size

        selected.reverse()
        return selected

    def get_conversation_context(self, max_tokens: Optional[int] = None) -> List[Message]:
        """``get_recent_context`` minus tool results cut off from their tool-call message."""
        return drop_orphan_tool_messages(self.get_recent_context(max_tokens))

    @property
    def messages(self) -> List[Message]:
        return list(self.data.short_term)

    @property
    def last_activity(self) -> int:
        """Epoch milliseconds of the last accepted message."""
        return self.data.last_activity

    # ------------------------------------------------------------------
    # Long-term
    # ------------------------------------------------------------------

    def _add_unique(self, items: List[str], value: str) -> bool:
        if value in items:
            return False
        items.append(value)
        self._dirty = True
        return True

    def add_fact(self, fact: str) -> bool:
        return self._add_unique(self.data.long_term.facts, fact)

    def add_skill(self, skill: str) -> bool:
        return self._add_unique(self.data.long_term.skills, skill)

    def add_relationship(self, relationship: str) -> bool:
        return self._add_unique(self.data.long_term.relationships, relationship)

    def get_long_term_context(self) -> str:
        """Markdown block of long-term knowledge (empty string if none)."""
        parts = []
        lt = self.data.long_term
        if lt.facts:
            parts.append("## Known Facts\n" + "\n".join(f"- {f}" for f in lt.facts))
        if lt.skills:
            parts.append("## Acquired Skills\n" + "\n".join(f"- {s}" for s in lt.skills))
        if lt.relationships:
            parts.append("## Relationships\n" + "\n".join(f"- {r}" for r in lt.relationships))
        return "\n\n".join(parts)

    # ------------------------------------------------------------------
    # Task state
    # ------------------------------------------------------------------

    def set_task_state(self, key: str, value: Any) -> None:
        self.data.task_state[key] = value
        self._dirty = True

    def get_task_state(self, key: str, default: Any = None) -> Any:
        return self.data.task_state.get(key, default)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def compact(self, summarizer: Optional[Summarizer] = None) -> bool:
        """
        Fold old short-term messages into a long-term fact.

        Runs only when there are at least 20 messages. Everything but the
        last 10 is passed to ``summarizer``; its text is stored as a fact and
        the short-term list is cut to the last 10, widened back to the
        assistant message when the cut would split a tool-call batch.
        Returns True if compacted.
        """
        if len(self.data.short_term) < COMPACT_THRESHOLD:
            return False

        cut = len(self.data.short_term) - COMPACT_KEEP
        # keep tool results together with the assistant message that called them
        while cut > 0 and self.data.short_term[cut].get("role") == "tool":
            cut -= 1
        to_summarize = self.data.short_term[:cut]
        to_keep = self.data.short_term[cut:]

        if summarizer:
            summary = summarizer(to_summarize)
            if summary:
                self.add_fact(f"Previous conversation summary: {summary}")

        self.data.short_term = to_keep
        self._dirty = True
        logger.info("Compacted memory %s: %d messages folded", self.persist_path, len(to_summarize))
        return True

    def clear(self) -> None:
        """Reset everything except the creation time."""
        now = self._now_ms()
        self.data = MemoryData(last_activity=now, created=self.data.created)
        self._dirty = True

    def get_summary(self) -> MemorySummary:
        lt = self.data.long_term
        return MemorySummary(
            short_term_messages=len(self.data.short_term),
            long_term_facts=len(lt.facts),
            long_term_skills=len(lt.skills),
            long_term_relationships=len(lt.relationships),
            last_activity=datetime.fromtimestamp(self.data.last_activity / 1000),
            created=datetime.fromtimestamp(self.data.created / 1000),
        )
