"""
MESSAGES
========

Builders for OpenAI-format chat messages.

Messages are plain dicts (``role``, ``content``, ``tool_calls``,
``tool_call_id``, ``name``) so they serialize straight into the request body
and into the memory snapshot.

Assistant messages
------------------
The backend tracks turn-taking through the assistant message that announced
each tool call. Text and tool calls produced by one model response must
travel in ONE assistant message; splitting them leaves the following
``tool`` messages pointing at an id the backend never saw in the preceding
assistant message and the conversation is rejected. ``assistant_message`` is
the only builder for assistant messages and always combines both.
"""

import copy
from typing import Any, Dict, List, Optional, Sequence

from .types import ParsedToolCall

IMAGE_PLACEHOLDER = "[image omitted: model does not support images]"

Message = Dict[str, Any]


def system_message(content: str) -> Message:
    return {"role": "system", "content": content}


def user_message(content: str) -> Message:
    return {"role": "user", "content": content}


def tool_message(call_id: str, output: str, name: Optional[str] = None) -> Message:
    msg = {"role": "tool", "tool_call_id": call_id, "content": output}
    if name:
        msg["name"] = name
    return msg


def assistant_message(text: str = "", tool_calls: Optional[Sequence[ParsedToolCall]] = None) -> Message:
    """
    Build the single assistant message for one model response.

    ``content`` is None only when there is no text but there are tool calls,
    which is what the backend expects for a pure tool-call response.
    """
    msg: Message = {"role": "assistant"}
    if tool_calls:
        msg["content"] = text or None
        msg["tool_calls"] = [tc.to_wire() for tc in tool_calls]
    else:
        msg["content"] = text or ""
    return msg


def image_message(data_url: str, caption: str = "Image returned by the last tool call:",
                  alt_text: Optional[str] = None) -> Message:
    """
    User message carrying a text part and one inline image part.

    ``alt_text`` is appended to the caption part; the ``image_url`` part
    holds only the standard ``url`` field.
    """
    text = f"{caption}\n{alt_text}" if alt_text else caption
    return {
        "role": "user",
        "content": [
            {"type": "text", "text": text},
            {"type": "image_url", "image_url": {"url": data_url}},
        ],
    }


def _is_image_part(part: Any) -> bool:
    return isinstance(part, dict) and part.get("type") == "image_url"


def has_images(messages: Sequence[Message]) -> bool:
    for msg in messages:
        content = msg.get("content")
        if isinstance(content, list) and any(_is_image_part(p) for p in content):
            return True
    return False


def strip_images(messages: Sequence[Message]) -> List[Message]:
    """
    Return a copy of ``messages`` with every image part replaced by text.

    Each image part becomes ``IMAGE_PLACEHOLDER``. A message left with
    only text parts collapses to plain string content.
    """
    stripped = []
    for msg in messages:
        content = msg.get("content")
        if not isinstance(content, list):
            stripped.append(copy.deepcopy(msg))
            continue

        texts = []
        for part in content:
            if _is_image_part(part):
                texts.append(IMAGE_PLACEHOLDER)
            elif isinstance(part, dict) and part.get("type") == "text":
                texts.append(part.get("text", ""))

        new_msg = {k: copy.deepcopy(v) for k, v in msg.items() if k != "content"}
        new_msg["content"] = "\n".join(t for t in texts if t)
        stripped.append(new_msg)
    return stripped


def without_images(message: Message) -> Message:
    """Single-message form of ``strip_images``, used before persisting."""
    return strip_images([message])[0]


def drop_orphan_tool_messages(messages: Sequence[Message]) -> List[Message]:
    """
    Drop ``tool`` messages whose call id no earlier assistant message announced.

    A history window cut between an assistant tool-call message and its
    results would otherwise start with tool messages the backend rejects.
    """
    announced = set()
    kept = []
    for msg in messages:
        role = msg.get("role")
        if role == "assistant":
            announced.update(tc.get("id") for tc in msg.get("tool_calls") or [])
        elif role == "tool" and msg.get("tool_call_id") not in announced:
            continue
        kept.append(msg)
    return kept
