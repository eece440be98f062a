"""
CLAW_CORE
=========

Execution core for an autonomous LLM agent.

Features:
- Streaming chat-completion client with tool-call reconstruction and
  rate-limit retry
- Tool-calling agent loop with cooperative cancellation and vision fallback
- Cron scheduler with at-most-once-per-minute dispatch
- Multi-session memory with token-budgeted context and crash-safe snapshots
- Autonomous runtime arbitrating scheduled work, goals and heartbeats

Usage:
    from claw_core import (
        load_config, CompletionClient, ToolRegistry, SessionManager,
        EventEmitter, AgentLoop, Scheduler, AutonomousRuntime,
    )

    config = load_config()
    emitter = EventEmitter()
    sessions = SessionManager(config.memory.persist_path, config.memory.max_context_tokens)
    loop = AgentLoop(config, CompletionClient(config.llm), ToolRegistry(emitter=emitter),
                     sessions, emitter)

    print(loop.run("What is in my workspace?"))

    runtime = AutonomousRuntime(config, loop, Scheduler(config.schedules))
    runtime.run_forever()
"""

__version__ = "1.0.0"

# Configuration
from .config import (
    ConfigError,
    GlobalConfig,
    LLMConfig,
    GoalConfig,
    ScheduleConfig,
    load_config,
    get_config_summary,
)

# Events
from .events import EventEmitter, JsonLinesSink, AgentEvent

# Completion client
from .llm import (
    CompletionClient,
    ParsedToolCall,
    CollectedResponse,
    LLMError,
    LLMAPIError,
    MaxRetriesExceeded,
    LLMConnectionError,
)

# Tools
from .tools import (
    BaseTool,
    FunctionTool,
    ToolRegistry,
    ToolDefinition,
    ToolParameter,
    ToolResult,
    ToolImage,
    ToolContext,
)

# Memory
from .memory import Memory, SessionManager, SessionInfo

# Scheduler
from .scheduler import Scheduler, ScheduledTask, CronExpression, ScheduleError

# Core loop
from .loop import AgentLoop, LoopResult, CancellationToken

# Runtime
from .runtime import AutonomousRuntime, CycleOutcome, select_next_goal, calculate_sleep_duration

# Logging
from .logging_config import setup_logging, setup_logging_from_config

__all__ = [
    "__version__",
    "ConfigError",
    "GlobalConfig",
    "LLMConfig",
    "GoalConfig",
    "ScheduleConfig",
    "load_config",
    "get_config_summary",
    "EventEmitter",
    "JsonLinesSink",
    "AgentEvent",
    "CompletionClient",
    "ParsedToolCall",
    "CollectedResponse",
    "LLMError",
    "LLMAPIError",
    "MaxRetriesExceeded",
    "LLMConnectionError",
    "BaseTool",
    "FunctionTool",
    "ToolRegistry",
    "ToolDefinition",
    "ToolParameter",
    "ToolResult",
    "ToolImage",
    "ToolContext",
    "Memory",
    "SessionManager",
    "SessionInfo",
    "Scheduler",
    "ScheduledTask",
    "CronExpression",
    "ScheduleError",
    "AgentLoop",
    "LoopResult",
    "CancellationToken",
    "AutonomousRuntime",
    "CycleOutcome",
    "select_next_goal",
    "calculate_sleep_duration",
    "setup_logging",
    "setup_logging_from_config",
]
