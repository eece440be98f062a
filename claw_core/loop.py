"""
AGENT_LOOP
==========

Core execution engine: one user input in, one final answer out.

Everything else (the autonomous runtime, a chat front end, scheduled work)
calls into ``AgentLoop.execute``.

Execution Cycle
---------------
::

    Idle → Iterating(n) → ToolDispatch → Iterating(n+1) → ... → Finished
                       ↘ Aborted | Errored | max_iterations

    1. Record the user message in the session's Memory and build the
       working history: system prompt + token-budgeted recent context.

    2. Each iteration:
       a. Stop if the turn's CancellationToken was requested.
       b. Stream a completion (history + tool catalog).
       c. Append ONE assistant message holding the text and tool calls.
       d. No tool calls → finished.
       e. Execute the calls in order, one ``tool`` message per call.
          Cancellation is checked before every call; calls left over
          still get a ``tool`` message so no id goes unanswered.
       f. If a tool returned an image, add one ephemeral user message with
          the most recent image (working history only, never Memory).

    3. On every exit: persist Memory, touch the session, emit exactly one
       ``agent:complete``.

Failure handling
----------------
- ``LLMError`` (API rejection, exhausted 429 retries, transport): terminal,
  final answer ``"Error: <message>"``.
- Backend rejects image content (first time only): strip images from the
  history, stop injecting images, redo the same iteration without
  counting it.
- Anything else (a tool executor raising, a subscriber bug in the stream
  hook): a synthetic user message ``"Error occurred: ..."`` is added to the
  working history and the loop continues.

Usage::

    loop = AgentLoop(config, client, registry, sessions, emitter)
    result = loop.execute("Summarise a.txt")
    print(result.status, result.final_response)
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Optional

from .config.loader import GlobalConfig
from .events import (
    CompleteEvent,
    ErrorEvent,
    EventEmitter,
    TextDeltaEvent,
    ThinkingEvent,
    TurnStartEvent,
)
from .llm.client import CompletionClient, LLMError
from .llm.messages import (
    Message,
    assistant_message,
    image_message,
    strip_images,
    system_message,
    tool_message,
    user_message,
)
from .llm.types import ParsedToolCall, StreamEvent, TextDelta
from .memory.sessions import SessionManager
from .memory.store import Memory, MemorySummary
from .prompts import build_heartbeat_prompt, build_system_prompt, build_task_prompt
from .tools.base import ToolContext, ToolImage, ToolRegistry, ToolResult

logger = logging.getLogger(__name__)

MAX_TOOL_ITERATIONS = 20
STOPPED_MARKER = "[Stopped by user]"
SKIPPED_TOOL_OUTPUT = "Tool call skipped: turn stopped by user"
MAX_ITERATIONS_ERROR = "Max tool iterations reached"

VISION_ERROR_KEYWORDS = (
    "image",
    "vision",
    "multimodal",
    "content type",
    "image_url",
    "does not support",
)


def is_vision_error(error: Exception) -> bool:
    """True if a backend error looks like a rejection of image content."""
    text = str(error).lower()
    return any(keyword in text for keyword in VISION_ERROR_KEYWORDS)


# ============================================================================
# CANCELLATION
# ============================================================================

class CancellationToken:
    """Cooperative stop flag for one turn. Polled, never preemptive."""

    def __init__(self):
        self._event = threading.Event()

    def request(self) -> bool:
        """Request cancellation. Returns True only for the first request."""
        if self._event.is_set():
            return False
        self._event.set()
        return True

    def is_requested(self) -> bool:
        return self._event.is_set()


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class ToolCallRecord:
    """Record of a tool call."""
    id: str
    name: str
    arguments: Dict
    result: ToolResult

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "name": self.name,
            "arguments": self.arguments,
            "result": self.result.to_dict(),
        }


@dataclass
class Turn:
    """One iteration: a model call plus its tool executions."""
    number: int
    timestamp: str
    llm_text: str
    tool_calls: List[ToolCallRecord] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> Dict:
        return {
            "number": self.number,
            "timestamp": self.timestamp,
            "llm_text": self.llm_text,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
            "duration_ms": self.duration_ms,
        }


@dataclass
class LoopResult:
    """Result of one turn."""
    status: Literal["completed", "aborted", "error", "max_iterations"]
    final_response: str
    iterations: int = 0
    messages: List[Message] = field(default_factory=list)
    tool_calls: List[ToolCallRecord] = field(default_factory=list)
    turns: List[Turn] = field(default_factory=list)
    error: Optional[str] = None
    duration_ms: int = 0
    session_key: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"

    def to_dict(self) -> Dict:
        return {
            "status": self.status,
            "final_response": self.final_response,
            "iterations": self.iterations,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
            "turns": [t.to_dict() for t in self.turns],
            "error": self.error,
            "duration_ms": self.duration_ms,
            "session_key": self.session_key,
        }


# ============================================================================
# AGENT LOOP
# ============================================================================

class AgentLoop:
    """
    Tool-calling agent loop.

    One turn at a time per instance. Serve concurrent sessions with one
    instance per session; each carries its own cancellation token.
    """

    def __init__(
        self,
        config: GlobalConfig,
        client: CompletionClient,
        tool_executor: ToolRegistry,
        sessions: SessionManager,
        emitter: Optional[EventEmitter] = None,
        system_prompt_builder: Optional[Callable[[Memory], str]] = None,
        auto_title: bool = False,
    ):
        """
        Args:
            config: Global configuration (workspace, iteration cap)
            client: Streaming completion client
            tool_executor: Anything with ``definitions()`` and
                ``execute(call, context) -> ToolResult``
            sessions: Session store that owns each session's Memory
            emitter: Event sink for notifications
            system_prompt_builder: Memory -> system prompt (default
                ``prompts.build_system_prompt``)
            auto_title: Generate a title in the background, on its own HTTP
                session, from the first user message of a session still
                named "New Chat N"
        """
        self.config = config
        self.client = client
        self.tool_executor = tool_executor
        self.sessions = sessions
        self.emitter = emitter or EventEmitter()
        self.system_prompt_builder = system_prompt_builder
        self.auto_title = auto_title
        self.max_iterations = config.max_tool_iterations or MAX_TOOL_ITERATIONS

        self._token: Optional[CancellationToken] = None
        self._running = False
        self._lock = threading.Lock()

    # ====================================================================
    # SHARED HELPERS
    # ====================================================================

    def _emit(self, event) -> None:
        self.emitter.emit(event)

    def _build_system_prompt(self, memory: Memory) -> str:
        if self.system_prompt_builder:
            return self.system_prompt_builder(memory)
        return build_system_prompt(self.config, memory, tools=self.tool_executor.definitions())

    def _on_stream_event(self, event: StreamEvent) -> None:
        if isinstance(event, TextDelta):
            self._emit(TextDeltaEvent(content=event.content))

    def _tool_context(self) -> ToolContext:
        return ToolContext(workdir=self.config.workspace, emit=self.emitter.emit)

    def _build_loop_result(self, status: str, state: Dict[str, Any],
                           final_response: str, error: Optional[str] = None) -> LoopResult:
        """Every exit point passes status/response/error; the rest comes from state."""
        return LoopResult(
            status=status,
            final_response=final_response,
            iterations=state["iterations"],
            messages=state["messages"],
            tool_calls=state["tool_calls"],
            turns=state["turns"],
            error=error,
            duration_ms=int((time.time() - state["start_time"]) * 1000),
            session_key=state["session_key"],
        )

    def _aborted(self, state: Dict[str, Any]) -> LoopResult:
        partial = state["last_text"]
        response = f"{partial}\n\n{STOPPED_MARKER}" if partial else STOPPED_MARKER
        logger.info("Turn stopped by user after %d iterations", state["iterations"])
        return self._build_loop_result("aborted", state, response)

    def _record(self, state: Dict[str, Any], memory: Memory, message: Message) -> None:
        """Append to the working history AND to Memory."""
        state["messages"].append(message)
        memory.add_message(message)

    # ====================================================================
    # PUBLIC API
    # ====================================================================

    def execute(self, message: str, session_key: Optional[str] = None,
                user_initiated: bool = True) -> LoopResult:
        """
        Run one turn. Never raises: failures come back as a LoopResult with
        status "error" and a final response starting with "Error: ".

        Auto-titling only considers the first turn of a session, and only
        when ``user_initiated`` (task and heartbeat prompts are not).
        """
        key = session_key or self.sessions.get_active_key()
        token = CancellationToken()

        with self._lock:
            if self._running:
                logger.warning("execute() called while a turn is already running")
            self._token = token
            self._running = True

        state: Dict[str, Any] = {
            "session_key": key,
            "messages": [],
            "tool_calls": [],
            "turns": [],
            "iterations": 0,
            "last_text": "",
            "start_time": time.time(),
        }
        memory: Optional[Memory] = None
        result: Optional[LoopResult] = None

        self._emit(TurnStartEvent(session_key=key, message=message))
        try:
            memory = self.sessions.get_memory(key)
            if (self.auto_title and user_initiated and not memory.messages
                    and self.sessions.is_untitled(key)):
                self.sessions.auto_title_session(self.client.fork(), key, message,
                                                 self.emitter, background=True)

            system_prompt = self._build_system_prompt(memory)
            memory.add_message(user_message(message))
            state["messages"] = [system_message(system_prompt)] + memory.get_conversation_context()

            result = self._run_iterations(state, memory, token)
        except Exception as e:
            logger.error("Turn failed unexpectedly: %s", e, exc_info=True)
            self._emit(ErrorEvent(error=str(e)))
            result = self._build_loop_result("error", state, f"Error: {e}", error=str(e))
        finally:
            if memory is not None:
                try:
                    memory.persist()
                except OSError as e:
                    logger.error("Failed to persist memory for session %s: %s", key, e)
            try:
                self.sessions.touch_session(key)
            except OSError as e:
                logger.error("Failed to touch session %s: %s", key, e)
            self._emit(CompleteEvent(session_key=key, status=result.status if result else "error"))
            with self._lock:
                self._token = None
                self._running = False

        logger.info("Turn finished: status=%s iterations=%d duration=%dms",
                    result.status, result.iterations, result.duration_ms)
        return result

    def _run_iterations(self, state: Dict[str, Any], memory: Memory,
                        token: CancellationToken) -> LoopResult:
        messages = state["messages"]
        tools = self.tool_executor.definitions() or None
        context = self._tool_context()
        images_enabled = True
        vision_fallback_used = False

        while state["iterations"] < self.max_iterations:
            if token.is_requested():
                return self._aborted(state)

            state["iterations"] += 1
            number = state["iterations"]
            turn_start = time.time()
            logger.debug("Iteration %d/%d", number, self.max_iterations)

            try:
                response = self.client.stream_and_collect(
                    messages, tools=tools, on_event=self._on_stream_event,
                )
            except LLMError as e:
                if not vision_fallback_used and is_vision_error(e):
                    vision_fallback_used = True
                    images_enabled = False
                    messages[:] = strip_images(messages)
                    state["iterations"] -= 1
                    logger.warning("Backend rejected image content, retrying text-only: %s", e)
                    continue
                logger.error("Completion failed: %s", e)
                self._emit(ErrorEvent(error=str(e)))
                return self._build_loop_result("error", state, f"Error: {e}", error=str(e))
            except Exception as e:
                logger.warning("Iteration %d failed: %s", number, e)
                self._emit(ErrorEvent(error=str(e)))
                messages.append(user_message(f"Error occurred: {e}. Please acknowledge and continue."))
                continue

            text = response.text
            tool_calls = response.tool_calls
            if text:
                state["last_text"] = text

            self._record(state, memory, assistant_message(text, tool_calls))
            turn = Turn(
                number=number,
                timestamp=datetime.now(timezone.utc).isoformat(),
                llm_text=text,
            )
            state["turns"].append(turn)

            if not tool_calls:
                turn.duration_ms = int((time.time() - turn_start) * 1000)
                return self._build_loop_result("completed", state, text)

            image, errors, stopped = self._dispatch_tools(
                state, memory, tool_calls, context, token, turn, images_enabled,
            )
            turn.duration_ms = int((time.time() - turn_start) * 1000)

            if stopped:
                return self._aborted(state)

            if image is not None:
                # Visual context for the next call only; Memory never sees it
                messages.append(image_message(image.data_url, alt_text=image.alt_text))

            for error in errors:
                messages.append(user_message(f"Error occurred: {error}. Please acknowledge and continue."))

        logger.warning("Max tool iterations reached (%d)", self.max_iterations)
        self._emit(ErrorEvent(error=MAX_ITERATIONS_ERROR))
        final = state["last_text"] or f"Error: {MAX_ITERATIONS_ERROR}"
        return self._build_loop_result("max_iterations", state, final, error=MAX_ITERATIONS_ERROR)

    def _dispatch_tools(self, state: Dict[str, Any], memory: Memory,
                        tool_calls: List[ParsedToolCall], context: ToolContext,
                        token: CancellationToken, turn: Turn, images_enabled: bool):
        """
        Execute a batch of tool calls in order.

        Returns (latest image or None, executor error messages, stopped flag).
        """
        image: Optional[ToolImage] = None
        errors: List[str] = []

        for index, call in enumerate(tool_calls):
            if token.is_requested():
                for skipped in tool_calls[index:]:
                    self._record(state, memory, tool_message(skipped.id, SKIPPED_TOOL_OUTPUT))
                return image, errors, True

            try:
                result = self.tool_executor.execute(call, context)
            except Exception as e:
                logger.warning("Tool executor raised for %s: %s", call.name, e)
                self._emit(ErrorEvent(error=str(e)))
                errors.append(str(e))
                result = ToolResult(success=False, output=f"Tool error: {e}", error=str(e))

            record = ToolCallRecord(id=call.id, name=call.name, arguments=call.arguments, result=result)
            turn.tool_calls.append(record)
            state["tool_calls"].append(record)
            self._record(state, memory, tool_message(call.id, result.as_message_content()))

            if result.image is not None and images_enabled:
                image = result.image

        return image, errors, False

    def run(self, message: str, session_key: Optional[str] = None) -> str:
        """Run one turn and return the final answer text."""
        return self.execute(message, session_key).final_response

    def execute_task(self, task: str, context: Optional[str] = None,
                     session_key: Optional[str] = None) -> LoopResult:
        return self.execute(build_task_prompt(task, context), session_key, user_initiated=False)

    def run_task(self, task: str, context: Optional[str] = None,
                 session_key: Optional[str] = None) -> str:
        """Run a scheduled or goal task."""
        return self.execute_task(task, context, session_key).final_response

    def execute_heartbeat(self, session_key: Optional[str] = None) -> LoopResult:
        self._emit(ThinkingEvent(content="Running heartbeat check..."))
        return self.execute(build_heartbeat_prompt(), session_key, user_initiated=False)

    def run_heartbeat(self, session_key: Optional[str] = None) -> str:
        """Run a periodic check-in turn."""
        return self.execute_heartbeat(session_key).final_response

    def abort(self) -> bool:
        """
        Stop the current turn at its next poll point.

        Returns True only if a turn was running and this call set its flag.
        """
        with self._lock:
            token = self._token if self._running else None
        if token is None:
            return False
        requested = token.request()
        if requested:
            logger.info("Abort requested")
        return requested

    def is_running(self) -> bool:
        return self._running

    def get_memory(self, session_key: Optional[str] = None) -> Memory:
        return self.sessions.get_memory(session_key or self.sessions.get_active_key())

    def get_memory_summary(self, session_key: Optional[str] = None) -> MemorySummary:
        return self.get_memory(session_key).get_summary()
