"""
COMPLETION_CLIENT
=================

HTTP client for an OpenAI-compatible chat-completion endpoint (OpenRouter
by default), with rate-limit-aware retry and incremental tool-call
reconstruction from the streamed response.

Retry policy
------------
Only HTTP 429 is retried, at most ``max_retries`` times. The wait before
each retry comes from, in order:

1. ``Retry-After`` (seconds)
2. ``X-RateLimit-Reset`` (absolute epoch time; seconds or milliseconds,
   detected by magnitude): ``max(reset - now, base_delay)``
3. ``base_delay * 2 ** attempt``

A 429 that is still there after the last retry raises ``MaxRetriesExceeded``.
Any other non-success status raises ``LLMAPIError`` immediately.

Stream framing
--------------
Server-sent ``data: <json>`` lines, terminated by ``data: [DONE]``. Blank
and comment lines are ignored; chunks that fail to decode are skipped.

Tool-call reconstruction
------------------------
A tool call arrives as one fragment carrying ``id`` and ``function.name``
followed by any number of fragments carrying only ``index`` and a piece of
``function.arguments``. Builders are keyed by ``index``; each is finalized
into a ``ParsedToolCall`` when the chunk with ``finish_reason`` arrives (or
when the stream ends). Arguments that are not a JSON object decode to
``{}``; the call is still emitted.

Usage::

    client = CompletionClient(config.llm)
    response = client.stream_and_collect(messages, tools=registry.definitions(),
                                         on_event=print)
    print(response.text, response.tool_calls)
"""

import json
import logging
import time
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import requests

from ..config.loader import LLMConfig
from .types import (
    CollectedResponse,
    Finish,
    ParsedToolCall,
    StreamEvent,
    TextDelta,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallStart,
)

logger = logging.getLogger(__name__)

DEFAULT_REFERER = "https://github.com/claw-core/claw-core"
DEFAULT_TITLE = "clawCore Agent"
TITLE_MAX_LENGTH = 64


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LLMError(Exception):
    """Base class for completion backend failures."""


class LLMAPIError(LLMError):
    """Backend answered with a non-retriable status."""

    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(f"API error: {status_code} {body}".strip())


class MaxRetriesExceeded(LLMError):
    """Rate limiting persisted through every retry."""

    def __init__(self, attempts: int, last_status: int = 429):
        self.attempts = attempts
        self.last_status = last_status
        super().__init__(f"Max retries exceeded after {attempts} attempts (last status {last_status})")


class LLMConnectionError(LLMError):
    """Transport failure (DNS, refused connection, timeout, broken stream)."""


# ============================================================================
# TOOL CALL BUILDER
# ============================================================================

class _ToolCallBuilder:
    """Accumulates one tool call across stream fragments."""

    def __init__(self, call_id: str, name: str = "", arguments: str = ""):
        self.id = call_id
        self.name = name
        self.arguments = arguments
        self.started = False
        self.closed = False

    def finalize(self) -> ParsedToolCall:
        self.closed = True
        return ParsedToolCall(id=self.id, name=self.name, arguments=parse_arguments(self.arguments, self.name))


def parse_arguments(raw: str, tool_name: str = "") -> Dict[str, Any]:
    """Decode accumulated argument text. Anything but a JSON object gives {}."""
    if not raw or not raw.strip():
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Invalid JSON arguments for tool %s (%s): %.200s", tool_name or "?", e, raw)
        return {}
    if not isinstance(value, dict):
        logger.warning("Non-object arguments for tool %s: %.200s", tool_name or "?", raw)
        return {}
    return value


# ============================================================================
# CLIENT
# ============================================================================

class CompletionClient:
    """
    Chat-completion client with streaming and rate-limit retry.

    ``session``, ``sleep`` and ``clock`` are injectable so retries and
    streams can be exercised without a network or real waiting.
    """

    def __init__(
        self,
        config: Optional[LLMConfig] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        referer: str = DEFAULT_REFERER,
        app_title: str = DEFAULT_TITLE,
    ):
        self.config = config or LLMConfig()
        self.session = session or requests.Session()
        self._sleep = sleep
        self._clock = clock
        self.referer = referer
        self.app_title = app_title

    def fork(self) -> "CompletionClient":
        """Same settings on a fresh HTTP session, for requests made from another thread."""
        return CompletionClient(self.config, sleep=self._sleep, clock=self._clock,
                                referer=self.referer, app_title=self.app_title)

    @property
    def model(self) -> str:
        return self.config.model

    @property
    def endpoint(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.api_key}",
            "HTTP-Referer": self.referer,
            "X-Title": self.app_title,
        }

    def _build_body(
        self,
        messages: Sequence[Dict],
        tools: Optional[Sequence[Dict]],
        stream: bool,
        temperature: Optional[float],
        max_tokens: Optional[int],
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": model or self.config.model,
            "messages": list(messages),
            "stream": stream,
            "temperature": self.config.temperature if temperature is None else temperature,
            "max_tokens": self.config.max_tokens if max_tokens is None else max_tokens,
        }
        if tools:
            body["tools"] = list(tools)
            body["tool_choice"] = "auto"
        return body

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    def _retry_wait_seconds(self, response: requests.Response, attempt: int) -> float:
        base_delay_ms = self.config.retry_delay_ms
        retry_after = response.headers.get("Retry-After")
        reset = response.headers.get("X-RateLimit-Reset")

        if retry_after:
            try:
                return max(float(retry_after), 0.0)
            except ValueError:
                logger.debug("Unparseable Retry-After header: %r", retry_after)

        if reset:
            try:
                reset_value = float(reset)
            except ValueError:
                logger.debug("Unparseable X-RateLimit-Reset header: %r", reset)
            else:
                # Epoch seconds are ~1.7e9, epoch milliseconds ~1.7e12
                reset_ms = reset_value if reset_value > 1e11 else reset_value * 1000
                now_ms = self._clock() * 1000
                return max(reset_ms - now_ms, base_delay_ms) / 1000.0

        return base_delay_ms * (2 ** attempt) / 1000.0

    def _post(self, body: Dict[str, Any], stream: bool) -> requests.Response:
        """POST with 429 retry. Returns a successful response."""
        max_retries = self.config.max_retries

        for attempt in range(max_retries + 1):
            try:
                response = self.session.post(
                    self.endpoint,
                    headers=self._headers(),
                    json=body,
                    stream=stream,
                    timeout=self.config.timeout_seconds,
                )
            except requests.RequestException as e:
                raise LLMConnectionError(f"Request to {self.endpoint} failed: {e}") from e

            if response.ok:
                return response

            if response.status_code == 429:
                if attempt >= max_retries:
                    response.close()
                    raise MaxRetriesExceeded(attempts=attempt + 1, last_status=429)
                wait = self._retry_wait_seconds(response, attempt)
                response.close()
                logger.warning(
                    "Rate limited, waiting %.1fs before retry %d/%d",
                    wait, attempt + 1, max_retries,
                )
                self._sleep(wait)
                continue

            text = response.text
            response.close()
            raise LLMAPIError(response.status_code, text)

        raise MaxRetriesExceeded(attempts=max_retries + 1)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def complete(
        self,
        messages: Sequence[Dict],
        tools: Optional[Sequence[Dict]] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Non-streaming completion. Returns the decoded response body."""
        body = self._build_body(messages, tools, False, temperature, max_tokens, model)
        response = self._post(body, stream=False)
        try:
            return response.json()
        except ValueError as e:
            raise LLMAPIError(response.status_code, f"Invalid JSON response: {e}") from e

    def stream(
        self,
        messages: Sequence[Dict],
        tools: Optional[Sequence[Dict]] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Iterator[StreamEvent]:
        """
        Streaming completion.

        Lazy: the request is sent when iteration starts. Each call opens one
        fresh request; the returned iterator cannot be restarted.
        """
        body = self._build_body(messages, tools, True, temperature, max_tokens)
        response = self._post(body, stream=True)
        try:
            yield from self._parse_stream(response.iter_lines(decode_unicode=True))
        except requests.RequestException as e:
            raise LLMConnectionError(f"Stream interrupted: {e}") from e
        finally:
            response.close()

    def _parse_stream(self, lines: Iterator[str]) -> Iterator[StreamEvent]:
        builders: Dict[int, _ToolCallBuilder] = {}
        finished = False

        for raw_line in lines:
            if raw_line is None:
                continue
            if isinstance(raw_line, bytes):
                raw_line = raw_line.decode("utf-8", errors="replace")
            line = raw_line.strip()
            if not line or line.startswith(":"):
                continue
            if not line.startswith("data:"):
                continue
            payload = line[5:].strip()
            if payload == "[DONE]":
                break

            try:
                chunk = json.loads(payload)
                choice = chunk["choices"][0]
            except (json.JSONDecodeError, KeyError, IndexError, TypeError) as e:
                logger.debug("Skipping malformed stream chunk (%s): %.200s", e, payload)
                continue

            delta = choice.get("delta") or {}

            content = delta.get("content")
            if content:
                yield TextDelta(content=content)

            for fragment in delta.get("tool_calls") or []:
                yield from self._apply_tool_fragment(builders, fragment)

            reason = choice.get("finish_reason")
            if reason:
                yield from self._close_builders(builders)
                yield Finish(reason=reason)
                finished = True

        # Stream ended without a finish_reason for some builders
        yield from self._close_builders(builders)
        if not finished:
            logger.debug("Stream ended without finish_reason")

    def _apply_tool_fragment(self, builders: Dict[int, _ToolCallBuilder], fragment: Dict) -> Iterator[StreamEvent]:
        index = fragment.get("index", 0)
        call_id = fragment.get("id")
        function = fragment.get("function") or {}
        name_part = function.get("name") or ""
        args_part = function.get("arguments") or ""

        builder = builders.get(index)
        if call_id and (builder is None or builder.closed or builder.id != call_id):
            builder = _ToolCallBuilder(call_id)
            builders[index] = builder
        elif builder is None or builder.closed:
            logger.debug("Tool call fragment for unknown index %s ignored", index)
            return

        if name_part:
            builder.name += name_part
        if builder.name and not builder.started:
            builder.started = True
            yield ToolCallStart(id=builder.id, name=builder.name)
        if args_part:
            builder.arguments += args_part
            yield ToolCallDelta(id=builder.id, arguments=args_part)

    def _close_builders(self, builders: Dict[int, _ToolCallBuilder]) -> Iterator[StreamEvent]:
        for index in sorted(builders):
            builder = builders[index]
            if builder.closed:
                continue
            tool_call = builder.finalize()
            yield ToolCallEnd(id=tool_call.id, tool_call=tool_call)

    def stream_and_collect(
        self,
        messages: Sequence[Dict],
        tools: Optional[Sequence[Dict]] = None,
        on_event: Optional[Callable[[StreamEvent], None]] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> CollectedResponse:
        """Drain ``stream`` into text plus finalized tool calls."""
        collected = CollectedResponse()
        text_parts: List[str] = []

        for event in self.stream(messages, tools, temperature, max_tokens):
            if on_event:
                on_event(event)
            if isinstance(event, TextDelta):
                text_parts.append(event.content)
            elif isinstance(event, ToolCallEnd):
                collected.tool_calls.append(event.tool_call)
            elif isinstance(event, Finish):
                collected.finish_reason = event.reason

        collected.text = "".join(text_parts)
        return collected


# ============================================================================
# TITLE GENERATION
# ============================================================================

TITLE_PROMPT = (
    "Generate a very short chat title (max 64 characters) that summarises what "
    "the user wants to talk about. Reply with ONLY the title text, no quotes, "
    "no punctuation at the end, no extra explanation."
)


def clean_title(raw: str) -> str:
    title = raw.strip()
    if title[:1] in ("'", '"'):
        title = title[1:]
    if title[-1:] in ("'", '"'):
        title = title[:-1]
    return title.strip()[:TITLE_MAX_LENGTH]


def generate_title(client: CompletionClient, message: str) -> Optional[str]:
    """
    Ask the backend for a short title describing ``message``.

    Returns None when there is no API key or the model answers with
    nothing usable. Backend errors propagate.
    """
    if not client.config.api_key:
        return None

    data = client.complete(
        [
            {"role": "system", "content": TITLE_PROMPT},
            {"role": "user", "content": message},
        ],
        temperature=0.5,
        max_tokens=32,
        model=client.config.title_model,
    )
    choices = data.get("choices") or []
    if not choices:
        return None
    content = ((choices[0].get("message") or {}).get("content") or "").strip()
    if not content:
        return None
    return clean_title(content) or None
