"""
CONFIG_LOADER
=============

Configuration management for clawCore.

Handles:
- Completion backend settings (endpoint, model, retry policy)
- Agent identity, goals and cron schedules
- Memory, heartbeat and autonomous-loop tuning

Config File Search Order
------------------------
1. Explicit ``config_path`` argument
2. ``$CLAW_CONFIG``
3. ``./.claw/config.json``
4. ``~/.claw/config.json``

The first file that exists and parses wins. Environment variables
``OPENROUTER_API_KEY``, ``OPENROUTER_MODEL`` and ``CLAW_WORKSPACE`` are
applied on top. Missing keys fall back to the dataclass defaults.

Usage::

    from claw_core.config import load_config

    config = load_config()
    print(config.llm.model, len(config.goals))
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# EXCEPTIONS
# ============================================================================

class ConfigError(Exception):
    """Configuration is invalid or could not be read."""


GOAL_PRIORITIES = ("high", "medium", "low")
GOAL_STATUSES = ("active", "paused", "completed")
FAILURE_POLICIES = ("skip", "retry")


# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass
class LLMConfig:
    """Completion backend settings."""
    api_key: str = ""
    base_url: str = "https://openrouter.ai/api/v1"
    model: str = "nvidia/nemotron-nano-9b-v2:free"
    max_retries: int = 3
    retry_delay_ms: int = 10000  # base delay for 429 backoff
    temperature: float = 0.7
    max_tokens: int = 4096
    timeout_seconds: int = 120
    title_model: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "api_key": self.api_key,
            "base_url": self.base_url,
            "model": self.model,
            "max_retries": self.max_retries,
            "retry_delay_ms": self.retry_delay_ms,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "timeout_seconds": self.timeout_seconds,
            "title_model": self.title_model,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "LLMConfig":
        return cls(
            api_key=data.get("api_key", data.get("apiKey", "")),
            base_url=data.get("base_url", data.get("baseUrl", "https://openrouter.ai/api/v1")),
            model=data.get("model", "nvidia/nemotron-nano-9b-v2:free"),
            max_retries=data.get("max_retries", 3),
            retry_delay_ms=data.get("retry_delay_ms", 10000),
            temperature=data.get("temperature", 0.7),
            max_tokens=data.get("max_tokens", 4096),
            timeout_seconds=data.get("timeout_seconds", 120),
            title_model=data.get("title_model"),
        )


@dataclass
class IdentityConfig:
    """Who the agent is."""
    name: str = "Claw Agent"
    description: str = "An autonomous AI agent"

    def to_dict(self) -> Dict:
        return {"name": self.name, "description": self.description}

    @classmethod
    def from_dict(cls, data: Dict) -> "IdentityConfig":
        return cls(
            name=data.get("name", "Claw Agent"),
            description=data.get("description", "An autonomous AI agent"),
        )


@dataclass
class GoalConfig:
    """A standing objective. Owned and mutated outside the core."""
    id: str
    description: str
    priority: str = "medium"  # high, medium, low
    status: str = "active"    # active, paused, completed
    context: Optional[str] = None

    def __post_init__(self):
        if self.priority not in GOAL_PRIORITIES:
            raise ConfigError(
                f"Goal '{self.id}': invalid priority '{self.priority}' "
                f"(expected one of {', '.join(GOAL_PRIORITIES)})"
            )
        if self.status not in GOAL_STATUSES:
            raise ConfigError(
                f"Goal '{self.id}': invalid status '{self.status}' "
                f"(expected one of {', '.join(GOAL_STATUSES)})"
            )

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def to_dict(self) -> Dict:
        result = {
            "id": self.id,
            "description": self.description,
            "priority": self.priority,
            "status": self.status,
        }
        if self.context:
            result["context"] = self.context
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> "GoalConfig":
        try:
            return cls(
                id=data["id"],
                description=data["description"],
                priority=data.get("priority", "medium"),
                status=data.get("status", "active"),
                context=data.get("context"),
            )
        except KeyError as e:
            raise ConfigError(f"Goal is missing required field {e}") from e


@dataclass
class ScheduleConfig:
    """A declarative cron schedule entry."""
    id: str
    cron: str
    action: str
    enabled: bool = True

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "cron": self.cron,
            "action": self.action,
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ScheduleConfig":
        try:
            return cls(
                id=data["id"],
                cron=data["cron"],
                action=data["action"],
                enabled=data.get("enabled", True),
            )
        except KeyError as e:
            raise ConfigError(f"Schedule is missing required field {e}") from e


@dataclass
class MemoryConfig:
    """Where memory lives and how much of it the model sees."""
    persist_path: str = "./.claw/memory"
    max_context_tokens: int = 8000

    def to_dict(self) -> Dict:
        return {
            "persist_path": self.persist_path,
            "max_context_tokens": self.max_context_tokens,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "MemoryConfig":
        return cls(
            persist_path=data.get("persist_path", data.get("persistPath", "./.claw/memory")),
            max_context_tokens=data.get("max_context_tokens", data.get("maxContextTokens", 8000)),
        )


@dataclass
class HeartbeatConfig:
    """Idle heartbeat settings."""
    interval_ms: int = 60000
    idle_threshold_seconds: int = 600  # run a heartbeat turn after 10 idle minutes

    def to_dict(self) -> Dict:
        return {
            "interval_ms": self.interval_ms,
            "idle_threshold_seconds": self.idle_threshold_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "HeartbeatConfig":
        return cls(
            interval_ms=data.get("interval_ms", data.get("intervalMs", 60000)),
            idle_threshold_seconds=data.get("idle_threshold_seconds", 600),
        )


@dataclass
class AutonomyConfig:
    """Sleep intervals and error backoff for the autonomous loop.

    ``scheduled_failure_policy``:
    - ``"skip"``: a failed scheduled task still advances to its next
      occurrence (no immediate retry).
    - ``"retry"``: a failed scheduled task keeps its ``next_run`` and is due
      again once the current minute has passed.
    """
    goal_sleep_seconds: float = 30.0
    schedule_sleep_seconds: float = 60.0
    idle_sleep_seconds: float = 300.0
    max_consecutive_errors: int = 5
    cooldown_seconds: float = 60.0
    backoff_step_seconds: float = 5.0
    scheduled_failure_policy: str = "skip"

    def __post_init__(self):
        if self.scheduled_failure_policy not in FAILURE_POLICIES:
            raise ConfigError(
                f"Invalid scheduled_failure_policy '{self.scheduled_failure_policy}' "
                f"(expected one of {', '.join(FAILURE_POLICIES)})"
            )

    def to_dict(self) -> Dict:
        return {
            "goal_sleep_seconds": self.goal_sleep_seconds,
            "schedule_sleep_seconds": self.schedule_sleep_seconds,
            "idle_sleep_seconds": self.idle_sleep_seconds,
            "max_consecutive_errors": self.max_consecutive_errors,
            "cooldown_seconds": self.cooldown_seconds,
            "backoff_step_seconds": self.backoff_step_seconds,
            "scheduled_failure_policy": self.scheduled_failure_policy,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "AutonomyConfig":
        return cls(
            goal_sleep_seconds=data.get("goal_sleep_seconds", 30.0),
            schedule_sleep_seconds=data.get("schedule_sleep_seconds", 60.0),
            idle_sleep_seconds=data.get("idle_sleep_seconds", 300.0),
            max_consecutive_errors=data.get("max_consecutive_errors", 5),
            cooldown_seconds=data.get("cooldown_seconds", 60.0),
            backoff_step_seconds=data.get("backoff_step_seconds", 5.0),
            scheduled_failure_policy=data.get("scheduled_failure_policy", "skip"),
        )


@dataclass
class GlobalConfig:
    """Full configuration for one agent process."""
    llm: LLMConfig = field(default_factory=LLMConfig)
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    goals: List[GoalConfig] = field(default_factory=list)
    schedules: List[ScheduleConfig] = field(default_factory=list)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    heartbeat: HeartbeatConfig = field(default_factory=HeartbeatConfig)
    autonomy: AutonomyConfig = field(default_factory=AutonomyConfig)
    workspace: str = field(default_factory=os.getcwd)
    max_tool_iterations: int = 20
    tool_timeout_seconds: int = 120
    logging_level: str = "INFO"
    logging_file: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "llm": self.llm.to_dict(),
            "identity": self.identity.to_dict(),
            "goals": [g.to_dict() for g in self.goals],
            "schedules": [s.to_dict() for s in self.schedules],
            "memory": self.memory.to_dict(),
            "heartbeat": self.heartbeat.to_dict(),
            "autonomy": self.autonomy.to_dict(),
            "workspace": self.workspace,
            "max_tool_iterations": self.max_tool_iterations,
            "tool_timeout_seconds": self.tool_timeout_seconds,
            "logging": {
                "level": self.logging_level,
                "file": self.logging_file,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "GlobalConfig":
        # "openrouter" is accepted as an alias for the llm section
        llm_data = data.get("llm", data.get("openrouter", {}))
        logging_data = data.get("logging", {})
        return cls(
            llm=LLMConfig.from_dict(llm_data),
            identity=IdentityConfig.from_dict(data.get("identity", {})),
            goals=[GoalConfig.from_dict(g) for g in data.get("goals", [])],
            schedules=[ScheduleConfig.from_dict(s) for s in data.get("schedules", [])],
            memory=MemoryConfig.from_dict(data.get("memory", {})),
            heartbeat=HeartbeatConfig.from_dict(data.get("heartbeat", {})),
            autonomy=AutonomyConfig.from_dict(data.get("autonomy", {})),
            workspace=data.get("workspace") or os.getcwd(),
            max_tool_iterations=data.get("max_tool_iterations", 20),
            tool_timeout_seconds=data.get("tool_timeout_seconds", 120),
            logging_level=logging_data.get("level", "INFO"),
            logging_file=logging_data.get("file"),
        )


# ============================================================================
# LOADING
# ============================================================================

def _candidate_paths(config_path: Optional[str]) -> List[Path]:
    candidates = []
    if config_path:
        candidates.append(Path(config_path))
    env_path = os.environ.get("CLAW_CONFIG")
    if env_path:
        candidates.append(Path(env_path))
    candidates.append(Path.cwd() / ".claw" / "config.json")
    candidates.append(Path.home() / ".claw" / "config.json")
    return candidates


def _apply_env_overrides(data: Dict[str, Any]) -> Dict[str, Any]:
    llm_key = "openrouter" if "openrouter" in data and "llm" not in data else "llm"
    llm_data = dict(data.get(llm_key, {}))

    if os.environ.get("OPENROUTER_API_KEY"):
        llm_data["api_key"] = os.environ["OPENROUTER_API_KEY"]
    if os.environ.get("OPENROUTER_MODEL"):
        llm_data["model"] = os.environ["OPENROUTER_MODEL"]

    data = dict(data)
    data[llm_key] = llm_data
    if os.environ.get("CLAW_WORKSPACE"):
        data["workspace"] = os.environ["CLAW_WORKSPACE"]
    return data


def load_config(config_path: Optional[str] = None) -> GlobalConfig:
    """
    Load configuration from the first readable config file, then apply
    environment overrides.

    Args:
        config_path: Optional explicit path (checked first)

    Returns:
        GlobalConfig

    Raises:
        ConfigError: If the explicit path is unreadable, or a goal/schedule
            entry is invalid
    """
    data: Dict[str, Any] = {}

    for path in _candidate_paths(config_path):
        if not path.exists():
            if config_path and path == Path(config_path):
                raise ConfigError(f"Config file not found: {path}")
            continue
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            logger.debug("Loaded config from %s", path)
            break
        except (json.JSONDecodeError, OSError) as e:
            if config_path and path == Path(config_path):
                raise ConfigError(f"Could not read config {path}: {e}") from e
            logger.warning("Skipping unreadable config %s: %s", path, e)

    return GlobalConfig.from_dict(_apply_env_overrides(data))


def get_config_summary(config: GlobalConfig) -> Dict[str, Any]:
    """Get a display-safe summary (API key reduced to a boolean)."""
    return {
        "model": config.llm.model,
        "name": config.identity.name,
        "goals": len(config.goals),
        "schedules": len(config.schedules),
        "workspace": config.workspace,
        "has_api_key": bool(config.llm.api_key),
    }
