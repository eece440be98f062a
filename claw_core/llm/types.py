"""
Stream event and tool-call types for the completion client.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass
class ParsedToolCall:
    """A fully reconstructed tool call. Arguments are decoded."""
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> Dict:
        """OpenAI ``tool_calls`` entry (arguments re-serialized)."""
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": json.dumps(self.arguments),
            },
        }

    def to_dict(self) -> Dict:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


# ============================================================================
# STREAM EVENTS
# ============================================================================

@dataclass
class TextDelta:
    content: str
    type: str = field(default="text_delta", init=False)


@dataclass
class ToolCallStart:
    id: str
    name: str
    type: str = field(default="tool_call_start", init=False)


@dataclass
class ToolCallDelta:
    id: str
    arguments: str
    type: str = field(default="tool_call_delta", init=False)


@dataclass
class ToolCallEnd:
    id: str
    tool_call: ParsedToolCall
    type: str = field(default="tool_call_end", init=False)


@dataclass
class Finish:
    reason: str
    type: str = field(default="finish", init=False)


StreamEvent = Union[TextDelta, ToolCallStart, ToolCallDelta, ToolCallEnd, Finish]


@dataclass
class CollectedResponse:
    """Result of draining a stream: all text plus every finalized tool call."""
    text: str = ""
    tool_calls: List[ParsedToolCall] = field(default_factory=list)
    finish_reason: Optional[str] = None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)
