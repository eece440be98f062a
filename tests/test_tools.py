import threading

import pytest

from claw_core.events import ToolEndEvent, ToolStartEvent
from claw_core.llm import ParsedToolCall
from claw_core.tools import (
    FunctionTool,
    ToolContext,
    ToolImage,
    ToolParameter,
    ToolRegistry,
    ToolResult,
)


@pytest.fixture
def registry(emitter):
    reg = ToolRegistry(emitter=emitter)
    yield reg
    reg.shutdown()


def echo_tool():
    return FunctionTool(
        name="echo",
        description="Echo text back",
        parameters=[ToolParameter("text", "string", "Text to echo")],
        fn=lambda text: text,
    )


def test_schema_is_openai_function_format(registry):
    registry.register(echo_tool())

    schema = registry.definitions()[0]

    assert schema["type"] == "function"
    assert schema["function"]["name"] == "echo"
    assert schema["function"]["parameters"]["properties"]["text"]["type"] == "string"
    assert schema["function"]["parameters"]["required"] == ["text"]


def test_execute_emits_start_and_end(registry, events):
    registry.register(echo_tool())

    result = registry.execute(ParsedToolCall("c1", "echo", {"text": "hello"}))

    assert result.success
    assert result.output == "hello"
    start, end = events
    assert isinstance(start, ToolStartEvent) and start.call_id == "c1"
    assert isinstance(end, ToolEndEvent) and end.result == "hello" and end.success
    assert end.to_dict()["callId"] == "c1"


def test_unknown_tool_lists_available(registry):
    registry.register(echo_tool())

    result = registry.execute(ParsedToolCall("c1", "nope", {}))

    assert not result.success
    assert result.output == "Unknown tool: nope. Available tools: echo"


def test_exceptions_become_failed_results(registry):
    def explode():
        raise RuntimeError("disk on fire")

    registry.register(FunctionTool("boom", "Always fails", explode))

    result = registry.execute(ParsedToolCall("c1", "boom", {}))

    assert not result.success
    assert result.output == "Tool error: disk on fire"


def test_bad_arguments_become_failed_results(registry):
    registry.register(echo_tool())

    result = registry.execute(ParsedToolCall("c1", "echo", {"wrong": 1}))

    assert not result.success
    assert result.output.startswith("Tool error: Invalid parameters for echo")


def test_timeout(registry):
    release = threading.Event()
    registry.register(FunctionTool("slow", "Waits", lambda: release.wait(5)))

    result = registry.execute(ParsedToolCall("c1", "slow", {}), timeout=0.05)
    release.set()

    assert not result.success
    assert "timed out" in result.output


def test_output_is_truncated(emitter):
    registry = ToolRegistry(emitter=emitter, max_output_size=10)
    registry.register(FunctionTool("big", "Large output", lambda: "x" * 50))

    result = registry.execute(ParsedToolCall("c1", "big", {}))
    registry.shutdown()

    assert result.output.startswith("x" * 10)
    assert "[TRUNCATED" in result.output


def test_context_is_passed_when_declared(registry, tmp_path):
    seen = []

    def where(context):
        seen.append(context.workdir)
        return ToolResult(success=True, output="ok", data={"cwd": context.workdir})

    registry.register(FunctionTool("where", "Report workdir", where))

    result = registry.execute(ParsedToolCall("c1", "where", {}), ToolContext(workdir=str(tmp_path)))

    assert seen == [str(tmp_path)]
    assert result.data == {"cwd": str(tmp_path)}


def test_result_message_content():
    assert ToolResult(success=True, output="out").as_message_content() == "out"
    assert ToolResult(success=False, output="", error="nope").as_message_content() == "Error: nope"


def test_tool_image_data_url():
    image = ToolImage.from_bytes(b"\x89PNG", alt_text="logo")
    assert image.data_url.startswith("data:image/png;base64,")


def test_register_and_unregister(registry):
    registry.register(echo_tool())
    assert registry.has("echo")
    assert registry.unregister("echo") is True
    assert registry.unregister("echo") is False
    assert registry.list_tools() == []
