"""
Configuration management for clawCore.
"""

from .loader import (
    ConfigError,
    GlobalConfig,
    LLMConfig,
    IdentityConfig,
    GoalConfig,
    ScheduleConfig,
    MemoryConfig,
    HeartbeatConfig,
    AutonomyConfig,
    load_config,
    get_config_summary,
)

__all__ = [
    "ConfigError",
    "GlobalConfig",
    "LLMConfig",
    "IdentityConfig",
    "GoalConfig",
    "ScheduleConfig",
    "MemoryConfig",
    "HeartbeatConfig",
    "AutonomyConfig",
    "load_config",
    "get_config_summary",
]
