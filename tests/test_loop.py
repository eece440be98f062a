import pytest

from claw_core.llm import LLMAPIError, MaxRetriesExceeded, ParsedToolCall
from claw_core.loop import (
    SKIPPED_TOOL_OUTPUT,
    STOPPED_MARKER,
    AgentLoop,
    CancellationToken,
    is_vision_error,
)
from claw_core.llm.messages import assistant_message, tool_message, user_message
from claw_core.memory import DEFAULT_SESSION_KEY, SessionManager
from claw_core.tools import ToolImage, ToolResult

from fakes import RecordingExecutor, ScriptedClient, reply

SYSTEM = "You are a test agent."


def make_loop(config, sessions, emitter, script, results=None):
    client = ScriptedClient(script)
    executor = RecordingExecutor(results or {})
    loop = AgentLoop(config, client, executor, sessions, emitter,
                     system_prompt_builder=lambda memory: SYSTEM)
    return loop, client, executor


def call(call_id="c1", name="read", **arguments):
    return ParsedToolCall(id=call_id, name=name, arguments=arguments)


def completes(events):
    return [e for e in events if e.type == "agent:complete"]


def test_single_tool_round_trip(config, sessions, emitter, events):
    loop, client, executor = make_loop(
        config, sessions, emitter,
        [reply("", call(path="a.txt")), reply("Done")],
        {"read": ToolResult(success=True, output="hello")},
    )

    result = loop.execute("Read a.txt")

    assert result.status == "completed"
    assert result.final_response == "Done"
    assert result.iterations == 2
    assert [m["role"] for m in result.messages] == ["system", "user", "assistant", "tool", "assistant"]

    assistant = result.messages[2]
    assert assistant["content"] is None
    assert assistant["tool_calls"][0]["id"] == "c1"
    assert result.messages[3] == {"role": "tool", "tool_call_id": "c1", "content": "hello"}

    # second request carried the tool output answering the announced id
    second = client.calls[1]
    assert second[-1]["tool_call_id"] == second[-2]["tool_calls"][0]["id"]

    assert executor.calls[0].arguments == {"path": "a.txt"}
    assert executor.contexts[0].workdir == config.workspace
    assert len(completes(events)) == 1
    assert events[0].type == "agent:turn_start"


def test_text_and_tool_calls_share_one_assistant_message(config, sessions, emitter):
    loop, client, _ = make_loop(
        config, sessions, emitter,
        [reply("Let me look.", call(), call("c2", "list")), reply("All done")],
        {"read": ToolResult(True, "r"), "list": ToolResult(True, "l")},
    )

    result = loop.execute("go")

    assistants = [m for m in result.messages if m["role"] == "assistant"]
    assert assistants[0]["content"] == "Let me look."
    assert [tc["id"] for tc in assistants[0]["tool_calls"]] == ["c1", "c2"]
    assert [m["tool_call_id"] for m in result.messages if m["role"] == "tool"] == ["c1", "c2"]


def test_turn_is_recorded_in_session_memory(config, sessions, emitter):
    loop, _, _ = make_loop(config, sessions, emitter, [reply("Hi there")])

    loop.execute("Hello")

    memory = sessions.get_memory(DEFAULT_SESSION_KEY)
    assert [m["role"] for m in memory.messages] == ["user", "assistant"]
    assert not memory.is_dirty
    assert memory.snapshot_path.exists()


def test_next_turn_sees_previous_context(config, sessions, emitter):
    loop, client, _ = make_loop(config, sessions, emitter, [reply("first"), reply("second")])

    loop.execute("one")
    loop.execute("two")

    contents = [m["content"] for m in client.calls[1]]
    assert contents == [SYSTEM, "one", "first", "two"]


def test_windowed_history_never_starts_with_a_tool_result(config, tmp_data_dir, emitter):
    sessions = SessionManager(str(tmp_data_dir), max_context_tokens=60)
    memory = sessions.get_memory(DEFAULT_SESSION_KEY)
    memory.add_message(user_message("Read a.txt"))
    memory.add_message(assistant_message("x" * 200, [call()]))
    memory.add_message(tool_message("c1", "hello"))
    memory.add_message({"role": "assistant", "content": "Done"})
    loop, client, _ = make_loop(config, sessions, emitter, [reply("ok")])

    loop.execute("next")

    sent = client.calls[0]
    assert [m["role"] for m in sent] == ["system", "assistant", "user"]
    assert sent[1]["content"] == "Done"


def test_history_after_compaction_keeps_tool_pairing(config, sessions, emitter):
    memory = sessions.get_memory(DEFAULT_SESSION_KEY)
    for i in range(9):
        memory.add_message(user_message(f"note {i}"))
    memory.add_message(assistant_message("", [call("c1"), call("c2")]))
    memory.add_message(tool_message("c1", "one"))
    memory.add_message(tool_message("c2", "two"))
    for i in range(8):
        memory.add_message(user_message(f"later {i}"))
    assert memory.compact() is True
    loop, client, _ = make_loop(config, sessions, emitter, [reply("ok")])

    loop.execute("next")

    sent = client.calls[0]
    assert [m["role"] for m in sent[:4]] == ["system", "assistant", "tool", "tool"]
    announced = {tc["id"] for tc in sent[1]["tool_calls"]}
    assert {m["tool_call_id"] for m in sent if m["role"] == "tool"} <= announced


def test_auto_title_only_for_first_user_turn(config, sessions, emitter):
    client = ScriptedClient([reply("a"), reply("b"), reply("c"), reply("d")])
    loop = AgentLoop(config, client, RecordingExecutor(), sessions, emitter,
                     system_prompt_builder=lambda memory: SYSTEM, auto_title=True)

    loop.execute("Plan a hike")
    loop.execute("And pack lunch")
    assert len(client.forks) == 1

    fresh = sessions.create_session().key
    loop.execute_task("Send report", session_key=fresh)
    loop.execute_heartbeat(session_key=sessions.create_session().key)
    assert len(client.forks) == 1


def test_text_deltas_are_forwarded(config, sessions, emitter, events):
    loop, _, _ = make_loop(config, sessions, emitter, [reply("streamed")])

    loop.execute("hi")

    assert [e.content for e in events if e.type == "agent:text_delta"] == ["streamed"]


def test_vision_rejection_retries_same_iteration_without_images(config, sessions, emitter):
    image = ToolImage(data="QUJD", alt_text="screenshot of login page")
    loop, client, _ = make_loop(
        config, sessions, emitter,
        [
            reply("", call(name="screenshot")),
            LLMAPIError(400, "This model does not support image input"),
            reply("I see a login page"),
        ],
        {"screenshot": ToolResult(True, "captured", image=image)},
    )

    result = loop.execute("What is on screen?")

    assert result.status == "completed"
    assert result.final_response == "I see a login page"
    assert result.iterations == 2
    assert len(client.calls) == 3
    rejected, retried = client.calls[1], client.calls[2]
    assert isinstance(rejected[-1]["content"], list)
    assert all(isinstance(m.get("content"), (str, type(None))) for m in retried)
    assert "screenshot of login page" in retried[-1]["content"]


def test_vision_fallback_without_images_still_counts_once(config, sessions, emitter):
    loop, client, _ = make_loop(
        config, sessions, emitter,
        [LLMAPIError(400, "vision not supported"), reply("ok")],
    )

    result = loop.execute("hi")

    assert result.final_response == "ok"
    assert result.iterations == 1
    assert len(client.calls) == 2


def test_second_vision_error_is_terminal(config, sessions, emitter):
    loop, _, _ = make_loop(
        config, sessions, emitter,
        [LLMAPIError(400, "image rejected"), LLMAPIError(400, "image rejected again")],
    )

    result = loop.execute("hi")

    assert result.status == "error"
    assert result.final_response.startswith("Error: ")


def test_images_never_reach_memory(config, sessions, emitter):
    loop, client, _ = make_loop(
        config, sessions, emitter,
        [reply("", call(name="screenshot")), reply("Looks fine")],
        {"screenshot": ToolResult(True, "captured", image=ToolImage(data="UElYRUxT"))},
    )

    loop.execute("look")

    assert isinstance(client.calls[1][-1]["content"], list)
    memory = sessions.get_memory(DEFAULT_SESSION_KEY)
    assert all(not isinstance(m.get("content"), list) for m in memory.messages)
    assert "UElYRUxT" not in memory.snapshot_path.read_text(encoding="utf-8")


def test_only_latest_image_is_attached(config, sessions, emitter):
    loop, client, _ = make_loop(
        config, sessions, emitter,
        [reply("", call("c1", "shot_a"), call("c2", "shot_b")), reply("done")],
        {
            "shot_a": ToolResult(True, "a", image=ToolImage(data="AAAA")),
            "shot_b": ToolResult(True, "b", image=ToolImage(data="BBBB")),
        },
    )

    loop.execute("look twice")

    image_messages = [m for m in client.calls[1] if isinstance(m.get("content"), list)]
    assert len(image_messages) == 1
    assert image_messages[0]["content"][1]["image_url"]["url"].endswith("BBBB")


def test_abort_mid_batch_answers_every_tool_call(config, sessions, emitter, events):
    loop, _, executor = make_loop(
        config, sessions, emitter,
        [reply("Working on it", call("c1"), call("c2"), call("c3"))],
        {"read": ToolResult(True, "content")},
    )
    executor.before_execute = lambda c: loop.abort()

    result = loop.execute("read three files")

    assert result.status == "aborted"
    assert result.final_response == f"Working on it\n\n{STOPPED_MARKER}"
    assert len(executor.calls) == 1
    tool_messages = [m for m in result.messages if m["role"] == "tool"]
    assert [m["tool_call_id"] for m in tool_messages] == ["c1", "c2", "c3"]
    assert [m["content"] for m in tool_messages[1:]] == [SKIPPED_TOOL_OUTPUT] * 2
    assert len(completes(events)) == 1
    assert not loop.is_running()


def test_abort_during_model_call_stops_before_tools(config, sessions, emitter):
    loop, client, executor = make_loop(
        config, sessions, emitter,
        [reply("", call())],
        {"read": ToolResult(True, "content")},
    )
    client.on_call = lambda n: loop.abort()

    result = loop.execute("go")

    assert result.status == "aborted"
    assert result.final_response == STOPPED_MARKER
    assert executor.calls == []
    assert result.messages[-1]["content"] == SKIPPED_TOOL_OUTPUT


def test_abort_when_idle_returns_false(config, sessions, emitter):
    loop, _, _ = make_loop(config, sessions, emitter, [])
    assert loop.abort() is False


def test_cancellation_token_reports_first_request_only():
    token = CancellationToken()
    assert token.request() is True
    assert token.request() is False
    assert token.is_requested()


def test_iteration_cap(config, sessions, emitter, events):
    config.max_tool_iterations = 3
    loop, client, _ = make_loop(
        config, sessions, emitter,
        [reply("", call(f"c{i}")) for i in range(3)],
        {"read": ToolResult(True, "again")},
    )

    result = loop.execute("loop forever")

    assert result.status == "max_iterations"
    assert result.iterations == 3
    assert len(client.calls) == 3
    assert result.final_response == "Error: Max tool iterations reached"
    assert any(e.type == "agent:error" for e in events)


def test_iteration_cap_keeps_last_text(config, sessions, emitter):
    config.max_tool_iterations = 2
    loop, _, _ = make_loop(
        config, sessions, emitter,
        [reply("step one", call("c1")), reply("", call("c2"))],
        {"read": ToolResult(True, "x")},
    )

    assert loop.execute("go").final_response == "step one"


def test_backend_error_is_terminal(config, sessions, emitter, events):
    loop, _, _ = make_loop(config, sessions, emitter, [MaxRetriesExceeded(attempts=4)])

    result = loop.execute("hi")

    assert result.status == "error"
    assert result.final_response.startswith("Error: Max retries exceeded")
    assert len(completes(events)) == 1
    assert completes(events)[0].status == "error"


def test_executor_failure_becomes_tool_message_and_error_note(config, sessions, emitter):
    loop, client, _ = make_loop(
        config, sessions, emitter,
        [reply("", call()), reply("Recovered")],
        {"read": RuntimeError("db down")},
    )

    result = loop.execute("read")

    assert result.final_response == "Recovered"
    tail = client.calls[1][-2:]
    assert tail[0] == {"role": "tool", "tool_call_id": "c1", "content": "Tool error: db down"}
    assert tail[1] == {"role": "user", "content": "Error occurred: db down. Please acknowledge and continue."}


def test_unexpected_failure_is_reported_once(config, sessions, emitter, events):
    def broken_prompt(memory):
        raise RuntimeError("template missing")

    loop = AgentLoop(config, ScriptedClient([]), RecordingExecutor(), sessions, emitter,
                     system_prompt_builder=broken_prompt)

    result = loop.execute("hi")

    assert result.status == "error"
    assert result.final_response == "Error: template missing"
    assert len(completes(events)) == 1


def test_task_and_heartbeat_prompts(config, sessions, emitter, events):
    loop, client, _ = make_loop(config, sessions, emitter, [reply("ok"), reply("HEARTBEAT_OK")])

    assert loop.run_task("Water the plants", "Only the ferns") == "ok"
    loop.execute_heartbeat()

    task_prompt = client.calls[0][-1]["content"]
    assert task_prompt == "Your current task: Water the plants\n\nAdditional context: Only the ferns"
    assert any(e.type == "agent:thinking" for e in events)


def test_explicit_session_key(config, sessions, emitter):
    other = sessions.create_session("other")
    sessions.set_active_key(DEFAULT_SESSION_KEY)
    loop, _, _ = make_loop(config, sessions, emitter, [reply("hi")])

    result = loop.execute("hello", session_key=other.key)

    assert result.session_key == other.key
    assert sessions.get_memory(other.key).messages
    assert sessions.get_memory(DEFAULT_SESSION_KEY).messages == []


@pytest.mark.parametrize("message,expected", [
    ("API error: 400 model does not support image input", True),
    ("API error: 400 invalid content type image_url", True),
    ("API error: 401 unauthorized", False),
])
def test_vision_error_detection(message, expected):
    assert is_vision_error(Exception(message)) is expected
