"""
SESSION_MANAGER
===============

Multiple independent chat sessions, each backed by its own ``Memory``.

File layout::

    {base}/
    ├── sessions.json                    # Manifest: sessions + active key
    └── sessions/
        └── {key}/
            ├── memory.json              # Per-session snapshot
            └── {YYYY-MM-DD}.jsonl       # Per-session daily log

Session lifecycle
-----------------
1. ``create_session`` allocates an 8-character key and a "New Chat" /
   "New Chat 2" / ... title, and makes the new session active.
2. ``get_memory`` lazily materializes one ``Memory`` per key; the same
   instance is returned on every call.
3. ``delete_session`` removes the manifest entry and the directory. Deleting
   the last session creates a fresh "New Chat" in the same operation;
   deleting the active session makes the most recently active remaining
   session active.

Migration
---------
Older agents kept a single ``{base}/memory.json`` plus ``{base}/*.jsonl``.
On startup these are moved into ``sessions/default/``. The step is
idempotent and runs every time the manager is created.

Usage::

    sessions = SessionManager(config.memory.persist_path)
    memory = sessions.get_memory(sessions.get_active_key())
"""

import json
import logging
import re
import shutil
import threading
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..events import EventEmitter, SessionRenamedEvent
from ..llm.client import CompletionClient, generate_title
from .store import SNAPSHOT_FILE, Memory, SizeEstimator, atomic_write_text

logger = logging.getLogger(__name__)

DEFAULT_SESSION_KEY = "default"
DEFAULT_TITLE = "New Chat"
SESSIONS_DIR = "sessions"
MANIFEST_FILE = "sessions.json"

_UNTITLED_RE = re.compile(r"^New Chat( \d+)?$")
_VALID_KEY_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def _now_ms() -> int:
    return int(time.time() * 1000)


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class SessionInfo:
    """Manifest entry. Timestamps are epoch milliseconds."""
    key: str
    title: str
    created: int
    last_activity: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "title": self.title,
            "created": self.created,
            "last_activity": self.last_activity,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionInfo":
        now = _now_ms()
        return cls(
            key=data["key"],
            title=data.get("title", DEFAULT_TITLE),
            created=int(data.get("created", now)),
            last_activity=int(data.get("last_activity", data.get("lastActivity", now))),
        )


# ============================================================================
# SESSION MANAGER
# ============================================================================

class SessionManager:
    """
    Owns the session manifest and one ``Memory`` per session.

    Args:
        base_path: Root directory for the manifest and session directories
        max_context_tokens: Budget handed to every ``Memory``
        size_estimator: Optional token estimator handed to every ``Memory``
    """

    def __init__(self, base_path: str, max_context_tokens: int = 8000,
                 size_estimator: Optional[SizeEstimator] = None):
        self.base_path = Path(base_path)
        self.max_context_tokens = max_context_tokens
        self.size_estimator = size_estimator
        self._memories: Dict[str, Memory] = {}
        self._sessions: List[SessionInfo] = []
        self._active_key = DEFAULT_SESSION_KEY
        self._lock = threading.RLock()

        self._load_manifest()
        self._migrate()

    # ------------------------------------------------------------------
    # Paths & manifest
    # ------------------------------------------------------------------

    def session_dir(self, key: str) -> Path:
        if not _VALID_KEY_RE.match(key):
            raise ValueError(f"Invalid session key: {key!r}")
        return self.base_path / SESSIONS_DIR / key

    @property
    def manifest_path(self) -> Path:
        return self.base_path / MANIFEST_FILE

    def _load_manifest(self) -> None:
        path = self.manifest_path
        if not path.exists():
            return
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            self._sessions = [SessionInfo.from_dict(s) for s in data.get("sessions", [])]
            self._active_key = data.get("active_key", data.get("activeKey", DEFAULT_SESSION_KEY))
        except (json.JSONDecodeError, OSError, KeyError, TypeError, ValueError) as e:
            logger.warning("Ignoring unreadable session manifest %s: %s", path, e)
            self._sessions = []
            self._active_key = DEFAULT_SESSION_KEY

    def _save_manifest(self) -> None:
        data = {
            "sessions": [s.to_dict() for s in self._sessions],
            "active_key": self._active_key,
        }
        atomic_write_text(self.manifest_path, json.dumps(data, indent=2, ensure_ascii=False))

    def _migrate(self) -> None:
        """Move a legacy single-session layout into ``sessions/default``."""
        old_snapshot = self.base_path / SNAPSHOT_FILE
        default_dir = self.session_dir(DEFAULT_SESSION_KEY)
        new_snapshot = default_dir / SNAPSHOT_FILE

        if old_snapshot.exists() and not new_snapshot.exists():
            default_dir.mkdir(parents=True, exist_ok=True)
            shutil.move(str(old_snapshot), str(new_snapshot))
            for log_file in self.base_path.glob("*.jsonl"):
                target = default_dir / log_file.name
                if target.exists():
                    logger.warning("Not migrating %s: %s already exists", log_file, target)
                    continue
                shutil.move(str(log_file), str(target))
            logger.info("Migrated legacy memory into %s", default_dir)
            if not any(s.key == DEFAULT_SESSION_KEY for s in self._sessions):
                now = _now_ms()
                self._sessions.append(SessionInfo(DEFAULT_SESSION_KEY, DEFAULT_TITLE, now, now))

        if not self._sessions:
            now = _now_ms()
            self._sessions.append(SessionInfo(DEFAULT_SESSION_KEY, DEFAULT_TITLE, now, now))
            self._active_key = DEFAULT_SESSION_KEY

        if self.get_session(self._active_key) is None:
            self._active_key = self._most_recent().key

        self.session_dir(self._active_key).mkdir(parents=True, exist_ok=True)
        self._save_manifest()

    def _most_recent(self) -> SessionInfo:
        return max(self._sessions, key=lambda s: s.last_activity)

    def _new_key(self) -> str:
        while True:
            key = uuid.uuid4().hex[:8]
            if self.get_session(key) is None:
                return key

    def _next_untitled_title(self) -> str:
        numbers = []
        for s in self._sessions:
            match = _UNTITLED_RE.match(s.title)
            if match:
                numbers.append(int(match.group(1)) if match.group(1) else 1)
        if not numbers:
            return DEFAULT_TITLE
        return f"{DEFAULT_TITLE} {max(numbers) + 1}"

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_memory(self, key: str) -> Memory:
        """Memory for ``key``, loaded on first use and cached."""
        with self._lock:
            memory = self._memories.get(key)
            if memory is None:
                session_dir = self.session_dir(key)
                session_dir.mkdir(parents=True, exist_ok=True)
                memory = Memory(str(session_dir), self.max_context_tokens, self.size_estimator)
                self._memories[key] = memory
            return memory

    def create_session(self, title: Optional[str] = None) -> SessionInfo:
        """Create a session and make it active."""
        with self._lock:
            now = _now_ms()
            info = SessionInfo(
                key=self._new_key(),
                title=title or self._next_untitled_title(),
                created=now,
                last_activity=now,
            )
            self.session_dir(info.key).mkdir(parents=True, exist_ok=True)
            self._sessions.append(info)
            self._active_key = info.key
            self._save_manifest()
            logger.info("Created session %s (%s)", info.key, info.title)
            return info

    def delete_session(self, key: str) -> bool:
        """Delete a session and its files. Never leaves zero sessions."""
        with self._lock:
            info = self.get_session(key)
            if info is None:
                return False

            self._sessions.remove(info)
            self._memories.pop(key, None)

            if not self._sessions:
                now = _now_ms()
                fresh = SessionInfo(self._new_key(), DEFAULT_TITLE, now, now)
                self.session_dir(fresh.key).mkdir(parents=True, exist_ok=True)
                self._sessions.append(fresh)
                self._active_key = fresh.key
            elif self._active_key == key:
                self._active_key = self._most_recent().key

            self._save_manifest()

            session_dir = self.session_dir(key)
            if session_dir.exists():
                shutil.rmtree(session_dir, ignore_errors=True)
            logger.info("Deleted session %s", key)
            return True

    def list_sessions(self) -> List[SessionInfo]:
        """All sessions, most recently active first."""
        with self._lock:
            return sorted(self._sessions, key=lambda s: s.last_activity, reverse=True)

    def get_session(self, key: str) -> Optional[SessionInfo]:
        for s in self._sessions:
            if s.key == key:
                return s
        return None

    def get_active_key(self) -> str:
        return self._active_key

    def set_active_key(self, key: str) -> bool:
        with self._lock:
            if self.get_session(key) is None:
                return False
            self._active_key = key
            self._save_manifest()
            return True

    def touch_session(self, key: str) -> None:
        with self._lock:
            info = self.get_session(key)
            if info:
                info.last_activity = _now_ms()
                self._save_manifest()

    def rename_session(self, key: str, title: str) -> bool:
        with self._lock:
            info = self.get_session(key)
            if info is None:
                return False
            info.title = title
            self._save_manifest()
            return True

    def is_untitled(self, key: str) -> bool:
        """True while the session still has its default "New Chat N" title."""
        info = self.get_session(key)
        return bool(info and _UNTITLED_RE.match(info.title))

    # ------------------------------------------------------------------
    # Auto-titling
    # ------------------------------------------------------------------

    def auto_title_session(self, client: CompletionClient, key: str, first_message: str,
                           emitter: Optional[EventEmitter] = None,
                           background: bool = False) -> Optional[str]:
        """
        Replace a default title with one generated from ``first_message``.

        Best effort: failures are logged, never raised. With
        ``background=True`` the request runs in a daemon thread and None is
        returned immediately.
        """
        if background:
            thread = threading.Thread(
                target=self.auto_title_session,
                args=(client, key, first_message, emitter),
                name=f"claw-title-{key}",
                daemon=True,
            )
            thread.start()
            return None

        if not self.is_untitled(key):
            return None

        try:
            title = generate_title(client, first_message)
        except Exception as e:
            logger.warning("Title generation failed for session %s: %s", key, e)
            return None

        if not title or not self.rename_session(key, title):
            return None

        logger.info("Session %s renamed to %r", key, title)
        if emitter:
            emitter.emit(SessionRenamedEvent(key=key, title=title))
        return title
