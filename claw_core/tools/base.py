"""
TOOL_BASE
=========

Base classes and registry for the tool executor.

Tools are external capabilities the model can invoke during a turn (shell,
files, browser, mail, ...). The concrete tools live outside this package;
the agent loop only relies on the uniform contract defined here: execute a
named tool with an argument mapping, get back success/output plus optional
structured data and an optional image.

Architecture
------------
::

    BaseTool (abstract)
    ├── definition property  → ToolDefinition (name, description, parameters)
    └── execute(args, context) → ToolResult (success, output, data, image, error)

    FunctionTool(BaseTool)    : wraps a plain callable

    ToolRegistry
    ├── register(tool)        : Add tool to registry
    ├── definitions()         : OpenAI function-calling schemas
    └── execute(call, context) : Run tool with timeout, emit tool_start/tool_end

Safety
------
- **Timeout**: ``default_timeout`` seconds per call via ThreadPoolExecutor.
  A timed-out tool keeps running in its worker thread; the loop moves on.
- **Output limiting**: Max 100KB per tool output (truncated with notice).
- **Error isolation**: Unknown tools, bad arguments, exceptions and timeouts
  all come back as ``ToolResult(success=False)``; nothing raises past
  ``execute``.

Usage::

    registry = ToolRegistry(emitter=emitter)
    registry.register(FunctionTool(
        name="read",
        description="Read a text file",
        parameters=[ToolParameter("path", "string", "File path")],
        fn=lambda path: open(path).read(),
    ))

    result = registry.execute(ParsedToolCall("c1", "read", {"path": "a.txt"}),
                              ToolContext(workdir="."))
"""

import base64
import inspect
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..events import EventEmitter, ToolEndEvent, ToolStartEvent
from ..llm.types import ParsedToolCall

logger = logging.getLogger(__name__)


# ============================================================================
# TOOL DEFINITION STRUCTURES
# ============================================================================

@dataclass
class ToolParameter:
    """Definition of a tool parameter."""
    name: str
    type: str  # "string", "integer", "number", "boolean", "array", "object"
    description: str
    required: bool = True
    enum: Optional[List[str]] = None
    default: Optional[Any] = None
    items: Optional[Dict] = None  # For array types

    def to_schema(self) -> Dict:
        """Convert to JSON Schema format."""
        schema = {
            "type": self.type,
            "description": self.description,
        }
        if self.enum:
            schema["enum"] = self.enum
        if self.default is not None:
            schema["default"] = self.default
        if self.items and self.type == "array":
            schema["items"] = self.items
        return schema


@dataclass
class ToolDefinition:
    """Complete tool definition for the model."""
    name: str
    description: str
    parameters: List[ToolParameter] = field(default_factory=list)

    def to_schema(self) -> Dict:
        """OpenAI function-calling format."""
        properties = {}
        required = []

        for param in self.parameters:
            properties[param.name] = param.to_schema()
            if param.required:
                required.append(param.name)

        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": properties,
                    "required": required
                }
            }
        }


# ============================================================================
# TOOL RESULT
# ============================================================================

@dataclass
class ToolImage:
    """Image returned by a tool (base64 payload)."""
    data: str
    mime_type: str = "image/png"
    alt_text: Optional[str] = None

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"

    @classmethod
    def from_bytes(cls, raw: bytes, mime_type: str = "image/png", alt_text: Optional[str] = None) -> "ToolImage":
        return cls(data=base64.b64encode(raw).decode("ascii"), mime_type=mime_type, alt_text=alt_text)


@dataclass
class ToolResult:
    """Result of tool execution."""
    success: bool
    output: str
    data: Optional[Any] = None
    image: Optional[ToolImage] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        result = {
            "success": self.success,
            "output": self.output,
        }
        if self.data is not None:
            result["data"] = self.data
        if self.error:
            result["error"] = self.error
        if self.image:
            result["image"] = {"mime_type": self.image.mime_type, "alt_text": self.image.alt_text}
        return result

    def as_message_content(self) -> str:
        """Text that goes into the ``tool`` message for this result."""
        if self.output:
            return self.output
        if self.error:
            return f"Error: {self.error}"
        return ""

    def __str__(self) -> str:
        if self.success:
            return self.output
        return f"[ERROR] {self.error or self.output or 'Unknown error'}"


@dataclass
class ToolContext:
    """Execution context handed to every tool. Opaque to the agent loop."""
    workdir: str = "."
    emit: Optional[Callable[[Any], None]] = None


# ============================================================================
# BASE TOOL CLASS
# ============================================================================

class BaseTool(ABC):
    """
    Base class for all tools.

    Subclasses must implement:
    - definition property: Returns ToolDefinition with schema
    - execute method: Performs the actual work
    """

    @property
    @abstractmethod
    def definition(self) -> ToolDefinition:
        """Return the tool's definition (schema for the model)."""
        pass

    @abstractmethod
    def execute(self, args: Dict[str, Any], context: ToolContext) -> ToolResult:
        """
        Execute the tool.

        Args:
            args: Decoded arguments from the model
            context: Working directory and progress emitter

        Returns:
            ToolResult with success status and output
        """
        pass

    @property
    def name(self) -> str:
        return self.definition.name

    def get_schema(self) -> Dict:
        return self.definition.to_schema()


class FunctionTool(BaseTool):
    """
    Tool backed by a plain callable.

    The callable receives the arguments as keyword arguments (plus
    ``context`` if its signature declares it) and may return a ToolResult,
    or any other value, which is converted to a successful text result.
    """

    def __init__(self, name: str, description: str, fn: Callable[..., Any],
                 parameters: Optional[List[ToolParameter]] = None):
        self._definition = ToolDefinition(name=name, description=description,
                                          parameters=parameters or [])
        self._fn = fn
        try:
            self._wants_context = "context" in inspect.signature(fn).parameters
        except (TypeError, ValueError):
            self._wants_context = False

    @property
    def definition(self) -> ToolDefinition:
        return self._definition

    def execute(self, args: Dict[str, Any], context: ToolContext) -> ToolResult:
        kwargs = dict(args)
        if self._wants_context:
            kwargs["context"] = context
        value = self._fn(**kwargs)
        if isinstance(value, ToolResult):
            return value
        return ToolResult(success=True, output="" if value is None else str(value))


# ============================================================================
# TOOL REGISTRY
# ============================================================================

class ToolRegistry:
    """
    Registry for managing and executing tools.

    Handles:
    - Tool registration and discovery
    - Schema generation for the model
    - Tool execution with timeout
    - Output size limiting
    - tool_start / tool_end notifications
    """

    DEFAULT_TIMEOUT = 120  # seconds
    MAX_OUTPUT_SIZE = 100000  # ~100KB

    def __init__(self, emitter: Optional[EventEmitter] = None,
                 default_timeout: int = DEFAULT_TIMEOUT,
                 max_output_size: int = MAX_OUTPUT_SIZE):
        self._tools: Dict[str, BaseTool] = {}
        self.emitter = emitter
        self.default_timeout = default_timeout
        self.max_output_size = max_output_size
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="claw-tool")

    def register(self, tool: BaseTool) -> None:
        """Register a tool (replaces an existing tool with the same name)."""
        if tool.name in self._tools:
            logger.debug("Replacing tool %s", tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> bool:
        if name in self._tools:
            del self._tools[name]
            return True
        return False

    def get(self, name: str) -> Optional[BaseTool]:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def list_tools(self) -> List[str]:
        return list(self._tools.keys())

    def definitions(self) -> List[Dict]:
        """All tool schemas in OpenAI function-calling format."""
        return [tool.get_schema() for tool in self._tools.values()]

    def _emit(self, event) -> None:
        if self.emitter:
            self.emitter.emit(event)

    def _truncate(self, result: ToolResult) -> ToolResult:
        if not result.output or len(result.output) <= self.max_output_size:
            return result
        return ToolResult(
            success=result.success,
            output=result.output[:self.max_output_size]
            + f"\n\n[TRUNCATED - output exceeded {self.max_output_size} characters]",
            data=result.data,
            image=result.image,
            error=result.error,
        )

    def execute(self, call: ParsedToolCall, context: Optional[ToolContext] = None,
                timeout: Optional[int] = None) -> ToolResult:
        """
        Execute one tool call.

        Args:
            call: Tool call reconstructed from the model response
            context: Execution context (defaults to the current directory)
            timeout: Timeout in seconds (uses default if None)

        Returns:
            ToolResult; never raises
        """
        tool = self._tools.get(call.name)
        if not tool:
            available = ", ".join(self.list_tools()) or "none"
            return ToolResult(
                success=False,
                output=f"Unknown tool: {call.name}. Available tools: {available}",
                error=f"Unknown tool: {call.name}",
            )

        context = context or ToolContext()
        timeout = timeout or self.default_timeout
        self._emit(ToolStartEvent(tool=call.name, args=call.arguments, call_id=call.id))

        try:
            future = self._executor.submit(tool.execute, call.arguments, context)
            result = future.result(timeout=timeout)
            if not isinstance(result, ToolResult):
                result = ToolResult(success=True, output="" if result is None else str(result))
            result = self._truncate(result)
        except FuturesTimeoutError:
            message = f"Tool '{call.name}' timed out after {timeout} seconds"
            result = ToolResult(success=False, output=f"Tool error: {message}", error=message)
        except TypeError as e:
            message = f"Invalid parameters for {call.name}: {e}"
            result = ToolResult(success=False, output=f"Tool error: {message}", error=message)
        except Exception as e:
            logger.warning("Tool %s raised: %s", call.name, e)
            result = ToolResult(success=False, output=f"Tool error: {e}", error=str(e))

        self._emit(ToolEndEvent(tool=call.name, call_id=call.id,
                                success=result.success, result=result.output))
        return result

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
