"""
EVENTS
======

Notification records and the event emitter.

Every observable step of the agent (turn start/complete/error, tool
start/end, scheduled-task dispatch, goal start/complete, heartbeat, session
rename) is announced as a tagged record with an epoch-millisecond timestamp.
The presentation layer that consumes them (WebSocket bridge, desktop UI,
log shipper) is not part of this package; it subscribes to an
``EventEmitter`` or reads the JSON lines written by ``JsonLinesSink``.

Wire format
-----------
One flat JSON object per event, camelCase keys, ``type`` and ``timestamp``
always present::

    {"type": "agent:tool_end", "tool": "read", "callId": "c1",
     "success": true, "result": "hello", "timestamp": 1760000000000}

Usage::

    emitter = EventEmitter()
    emitter.subscribe(JsonLinesSink())
    emitter.emit(ToolStartEvent(tool="read", args={"path": "a.txt"}, call_id="c1"))
"""

import json
import logging
import sys
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Literal, Optional, TextIO

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


# ============================================================================
# EVENT MODELS
# ============================================================================

class AgentEvent(BaseModel):
    """Base for all notification records."""
    model_config = ConfigDict(populate_by_name=True)

    type: str
    timestamp: int = Field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class StartedEvent(AgentEvent):
    type: Literal["agent:started"] = "agent:started"
    config: Dict[str, str]  # {"name": ..., "model": ...}


class ThinkingEvent(AgentEvent):
    type: Literal["agent:thinking"] = "agent:thinking"
    content: str


class TextDeltaEvent(AgentEvent):
    type: Literal["agent:text_delta"] = "agent:text_delta"
    content: str


class TurnStartEvent(AgentEvent):
    type: Literal["agent:turn_start"] = "agent:turn_start"
    session_key: str = Field(..., alias="sessionKey")
    message: str


class CompleteEvent(AgentEvent):
    type: Literal["agent:complete"] = "agent:complete"
    session_key: Optional[str] = Field(None, alias="sessionKey")
    status: Optional[str] = None


class ErrorEvent(AgentEvent):
    type: Literal["agent:error"] = "agent:error"
    error: str


class ToolStartEvent(AgentEvent):
    type: Literal["agent:tool_start"] = "agent:tool_start"
    tool: str
    args: Dict[str, Any] = Field(default_factory=dict)
    call_id: str = Field(..., alias="callId")


class ToolEndEvent(AgentEvent):
    type: Literal["agent:tool_end"] = "agent:tool_end"
    tool: str
    call_id: str = Field(..., alias="callId")
    success: bool
    result: Any = None


class ScheduledTaskEvent(AgentEvent):
    type: Literal["agent:scheduled_task"] = "agent:scheduled_task"
    task_id: str = Field(..., alias="taskId")
    action: str


class GoalStartedEvent(AgentEvent):
    type: Literal["agent:goal_started"] = "agent:goal_started"
    goal_id: str = Field(..., alias="goalId")
    description: str


class GoalCompletedEvent(AgentEvent):
    type: Literal["agent:goal_completed"] = "agent:goal_completed"
    goal_id: str = Field(..., alias="goalId")


class HeartbeatEvent(AgentEvent):
    type: Literal["agent:heartbeat"] = "agent:heartbeat"
    status: str = "idle"
    uptime: float


class SessionRenamedEvent(AgentEvent):
    type: Literal["session:renamed"] = "session:renamed"
    key: str
    title: str


# ============================================================================
# EMITTER
# ============================================================================

Subscriber = Callable[[AgentEvent], None]


class EventEmitter:
    """
    Fan-out of events to subscribers.

    One emitter is created per agent and handed to the loop, the tool
    registry and the runtime at construction. A subscriber that raises is
    logged and skipped; the remaining subscribers still receive the event.
    """

    def __init__(self, history_size: int = 200):
        self._subscribers: List[Subscriber] = []
        self._history: Deque[AgentEvent] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def subscribe(self, fn: Subscriber) -> None:
        with self._lock:
            if fn not in self._subscribers:
                self._subscribers.append(fn)

    def unsubscribe(self, fn: Subscriber) -> bool:
        with self._lock:
            if fn in self._subscribers:
                self._subscribers.remove(fn)
                return True
            return False

    def emit(self, event: AgentEvent) -> None:
        with self._lock:
            self._history.append(event)
            subscribers = list(self._subscribers)

        for fn in subscribers:
            try:
                fn(event)
            except Exception as e:
                logger.warning("Event subscriber failed on %s: %s", event.type, e)

    @property
    def history(self) -> List[AgentEvent]:
        with self._lock:
            return list(self._history)

    def events_of(self, event_type: str) -> List[AgentEvent]:
        """Recent events of one type, oldest first."""
        return [e for e in self.history if e.type == event_type]


class JsonLinesSink:
    """Subscriber that writes one JSON line per event to a text stream."""

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream or sys.stdout

    def __call__(self, event: AgentEvent) -> None:
        self.stream.write(event.to_json() + "\n")
        self.stream.flush()
