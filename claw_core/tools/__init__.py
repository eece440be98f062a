"""
Tool executor boundary: tool contract, results and registry.
"""

from .base import (
    ToolParameter,
    ToolDefinition,
    ToolImage,
    ToolResult,
    ToolContext,
    BaseTool,
    FunctionTool,
    ToolRegistry,
)

__all__ = [
    "ToolParameter",
    "ToolDefinition",
    "ToolImage",
    "ToolResult",
    "ToolContext",
    "BaseTool",
    "FunctionTool",
    "ToolRegistry",
]
