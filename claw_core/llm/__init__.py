"""
Streaming completion client and chat message helpers.
"""

from .types import (
    ParsedToolCall,
    TextDelta,
    ToolCallStart,
    ToolCallDelta,
    ToolCallEnd,
    Finish,
    StreamEvent,
    CollectedResponse,
)
from .client import (
    CompletionClient,
    LLMError,
    LLMAPIError,
    MaxRetriesExceeded,
    LLMConnectionError,
    generate_title,
)
from .messages import (
    IMAGE_PLACEHOLDER,
    system_message,
    user_message,
    assistant_message,
    tool_message,
    image_message,
    strip_images,
    has_images,
    without_images,
    drop_orphan_tool_messages,
)

__all__ = [
    "ParsedToolCall",
    "TextDelta",
    "ToolCallStart",
    "ToolCallDelta",
    "ToolCallEnd",
    "Finish",
    "StreamEvent",
    "CollectedResponse",
    "CompletionClient",
    "LLMError",
    "LLMAPIError",
    "MaxRetriesExceeded",
    "LLMConnectionError",
    "generate_title",
    "IMAGE_PLACEHOLDER",
    "system_message",
    "user_message",
    "assistant_message",
    "tool_message",
    "image_message",
    "strip_images",
    "has_images",
    "without_images",
    "drop_orphan_tool_messages",
]
