from __future__ import annotations

import json

import pytest
import requests

from claw_core.config import LLMConfig
from claw_core.llm import (
    CompletionClient,
    Finish,
    LLMAPIError,
    LLMConnectionError,
    MaxRetriesExceeded,
    TextDelta,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallStart,
    generate_title,
)

from fakes import FakeResponse, FakeSession, delta, sse


def make_client(responses, sleeps=None, clock=lambda: 1_700_000_000.0, **config):
    cfg = LLMConfig(api_key="sk-test", model="test/model", **config)
    sleeps = sleeps if sleeps is not None else []
    session = FakeSession(responses)
    client = CompletionClient(cfg, session=session, sleep=sleeps.append, clock=clock)
    return client, session, sleeps


def ok_stream(*chunks, done=True):
    return FakeResponse(200, lines=sse(*chunks, done=done))


def rate_limited(headers=None):
    return FakeResponse(429, body="slow down", headers=headers or {})


# ---------------------------------------------------------------------------
# Stream parsing
# ---------------------------------------------------------------------------

def test_tool_call_arguments_reassembled_from_index_only_fragments():
    fragments = ['{"pa', 'th": "a', '.txt", "lines"', ': [1, 2]}']
    chunks = [delta(tool_calls=[{"index": 0, "id": "call_1", "type": "function",
                                 "function": {"name": "read", "arguments": ""}}])]
    chunks += [delta(tool_calls=[{"index": 0, "function": {"arguments": f}}]) for f in fragments]
    chunks.append(delta(finish_reason="tool_calls"))
    client, _, _ = make_client([ok_stream(*chunks)])

    response = client.stream_and_collect([{"role": "user", "content": "go"}])

    assert len(response.tool_calls) == 1
    call = response.tool_calls[0]
    assert call.id == "call_1"
    assert call.name == "read"
    assert call.arguments == json.loads("".join(fragments))
    assert response.finish_reason == "tool_calls"


def test_stream_event_order():
    chunks = [
        delta(content="Let me "),
        delta(content="check."),
        delta(tool_calls=[{"index": 0, "id": "c1", "function": {"name": "list", "arguments": "{}"}}]),
        delta(finish_reason="tool_calls"),
    ]
    client, _, _ = make_client([ok_stream(*chunks)])

    events = list(client.stream([{"role": "user", "content": "hi"}]))

    kinds = [type(e) for e in events]
    assert kinds == [TextDelta, TextDelta, ToolCallStart, ToolCallDelta, ToolCallEnd, Finish]
    assert events[-1].reason == "tool_calls"
    assert events[4].tool_call.arguments == {}


def test_parallel_tool_calls_keyed_by_index():
    chunks = [
        delta(tool_calls=[{"index": 0, "id": "a", "function": {"name": "read", "arguments": '{"path":'}},
                          {"index": 1, "id": "b", "function": {"name": "list", "arguments": ""}}]),
        delta(tool_calls=[{"index": 1, "function": {"arguments": '{"dir": "."}'}}]),
        delta(tool_calls=[{"index": 0, "function": {"arguments": ' "x"}'}}]),
        delta(finish_reason="tool_calls"),
    ]
    client, _, _ = make_client([ok_stream(*chunks)])

    response = client.stream_and_collect([])

    assert [(c.id, c.name, c.arguments) for c in response.tool_calls] == [
        ("a", "read", {"path": "x"}),
        ("b", "list", {"dir": "."}),
    ]


def test_invalid_arguments_still_emit_call_with_empty_mapping(caplog):
    chunks = [
        delta(tool_calls=[{"index": 0, "id": "c1", "function": {"name": "exec", "arguments": '{"cmd": '}}]),
        delta(finish_reason="tool_calls"),
    ]
    client, _, _ = make_client([ok_stream(*chunks)])

    with caplog.at_level("WARNING", logger="claw_core.llm.client"):
        response = client.stream_and_collect([])

    assert len(response.tool_calls) == 1
    assert response.tool_calls[0].name == "exec"
    assert response.tool_calls[0].arguments == {}
    assert "Invalid JSON arguments" in caplog.text


def test_non_object_arguments_become_empty_mapping():
    chunks = [
        delta(tool_calls=[{"index": 0, "id": "c1", "function": {"name": "exec", "arguments": "[1, 2]"}}]),
        delta(finish_reason="tool_calls"),
    ]
    client, _, _ = make_client([ok_stream(*chunks)])

    assert client.stream_and_collect([]).tool_calls[0].arguments == {}


def test_open_builders_finalized_when_stream_ends_without_finish_reason():
    chunks = [
        delta(tool_calls=[{"index": 0, "id": "c1", "function": {"name": "read", "arguments": '{"path": "a"}'}}]),
    ]
    client, _, _ = make_client([ok_stream(*chunks, done=False)])

    response = client.stream_and_collect([])

    assert response.tool_calls[0].arguments == {"path": "a"}
    assert response.finish_reason is None


def test_malformed_and_comment_lines_are_skipped():
    lines = [
        ": keep-alive",
        "data: {not json",
        "event: ping",
        "data: " + json.dumps(delta(content="ok")),
        "data: " + json.dumps({"choices": []}),
        "data: " + json.dumps(delta(finish_reason="stop")),
        "data: [DONE]",
        "data: " + json.dumps(delta(content="after done")),
    ]
    client, _, _ = make_client([FakeResponse(200, lines=lines)])

    response = client.stream_and_collect([])

    assert response.text == "ok"
    assert response.finish_reason == "stop"


def test_on_event_hook_sees_every_event():
    seen = []
    client, _, _ = make_client([ok_stream(delta(content="a"), delta(content="b"), delta(finish_reason="stop"))])

    response = client.stream_and_collect([], on_event=seen.append)

    assert response.text == "ab"
    assert [e.type for e in seen] == ["text_delta", "text_delta", "finish"]


# ---------------------------------------------------------------------------
# Request shape
# ---------------------------------------------------------------------------

def test_request_body_and_headers():
    tools = [{"type": "function", "function": {"name": "read", "parameters": {}}}]
    client, session, _ = make_client([ok_stream(delta(finish_reason="stop")),
                                      ok_stream(delta(finish_reason="stop"))])

    client.stream_and_collect([{"role": "user", "content": "x"}], tools=tools)
    client.stream_and_collect([{"role": "user", "content": "x"}])

    with_tools, without_tools = session.calls
    assert with_tools["url"] == "https://openrouter.ai/api/v1/chat/completions"
    assert with_tools["stream"] is True
    body = with_tools["json"]
    assert body["model"] == "test/model"
    assert body["tools"] == tools
    assert body["tool_choice"] == "auto"
    assert body["stream"] is True
    assert body["temperature"] == 0.7
    assert body["max_tokens"] == 4096
    assert "tool_choice" not in without_tools["json"]
    assert "tools" not in without_tools["json"]

    headers = with_tools["headers"]
    assert headers["Authorization"] == "Bearer sk-test"
    assert headers["Content-Type"] == "application/json"
    assert "HTTP-Referer" in headers
    assert "X-Title" in headers


def test_stream_is_lazy():
    client, session, _ = make_client([ok_stream(delta(finish_reason="stop"))])

    iterator = client.stream([])
    assert session.calls == []
    list(iterator)
    assert len(session.calls) == 1


def test_complete_returns_decoded_body():
    body = {"choices": [{"message": {"role": "assistant", "content": "hi"}}]}
    client, session, _ = make_client([FakeResponse(200, body=body)])

    assert client.complete([{"role": "user", "content": "x"}]) == body
    assert session.calls[0]["json"]["stream"] is False


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

def test_retry_after_header_is_honoured():
    client, session, sleeps = make_client([
        rate_limited({"Retry-After": "5"}),
        ok_stream(delta(content="done"), delta(finish_reason="stop")),
    ])

    response = client.stream_and_collect([])

    assert response.text == "done"
    assert sleeps == [5.0]
    assert len(session.calls) == 2


def test_max_retries_exceeded_after_configured_retries():
    client, session, sleeps = make_client(
        [rate_limited({"Retry-After": "5"}) for _ in range(4)], max_retries=3,
    )

    with pytest.raises(MaxRetriesExceeded) as exc_info:
        client.stream_and_collect([])

    assert len(session.calls) == 4
    assert len(sleeps) == 3
    assert all(s >= 5.0 for s in sleeps)
    assert exc_info.value.attempts == 4


def test_exponential_backoff_without_headers():
    client, _, sleeps = make_client(
        [rate_limited(), rate_limited(), FakeResponse(200, body={"choices": []})],
        retry_delay_ms=10000,
    )

    client.complete([])

    assert sleeps == [10.0, 20.0]


def test_rate_limit_reset_in_seconds():
    client, _, sleeps = make_client(
        [rate_limited({"X-RateLimit-Reset": "1700000030"}), FakeResponse(200, body={})],
        clock=lambda: 1_700_000_000.0,
    )

    client.complete([])

    assert sleeps == [pytest.approx(30.0)]


def test_rate_limit_reset_in_milliseconds_floors_at_base_delay():
    client, _, sleeps = make_client(
        [rate_limited({"X-RateLimit-Reset": "1700000002000"}), FakeResponse(200, body={})],
        clock=lambda: 1_700_000_000.0,
        retry_delay_ms=5000,
    )

    client.complete([])

    assert sleeps == [pytest.approx(5.0)]


def test_retry_after_wins_over_reset_header():
    client, _, sleeps = make_client(
        [rate_limited({"Retry-After": "2", "X-RateLimit-Reset": "1700000090"}), FakeResponse(200, body={})],
    )

    client.complete([])

    assert sleeps == [2.0]


def test_other_errors_are_not_retried():
    client, session, sleeps = make_client([FakeResponse(400, body="bad request")])

    with pytest.raises(LLMAPIError) as exc_info:
        client.stream_and_collect([])

    assert exc_info.value.status_code == 400
    assert "bad request" in str(exc_info.value)
    assert len(session.calls) == 1
    assert sleeps == []


def test_transport_failure_raises_connection_error():
    client, _, _ = make_client([requests.ConnectionError("refused")])

    with pytest.raises(LLMConnectionError):
        client.complete([])


# ---------------------------------------------------------------------------
# Titles
# ---------------------------------------------------------------------------

def test_generate_title_strips_quotes_and_caps_length():
    long_title = '"' + "Planning a trip to the mountains " * 4 + '"'
    body = {"choices": [{"message": {"content": long_title}}]}
    client, session, _ = make_client([FakeResponse(200, body=body)])

    title = generate_title(client, "I want to plan a trip")

    assert not title.startswith('"')
    assert len(title) <= 64
    assert session.calls[0]["json"]["max_tokens"] == 32


def test_generate_title_without_api_key_makes_no_request():
    client = CompletionClient(LLMConfig(api_key=""), session=FakeSession([]))

    assert generate_title(client, "hello") is None


def test_fork_keeps_settings_on_a_fresh_http_session():
    client, session, sleeps = make_client([])

    forked = client.fork()

    assert forked.config is client.config
    assert isinstance(forked.session, requests.Session)
    assert forked.session is not session
    forked._sleep(3)
    assert sleeps == [3]
