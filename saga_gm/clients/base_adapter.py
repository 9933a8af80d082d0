"""
Wire adapter contract shared by every LLM vendor.

An adapter translates a normalized ``LLMRequest`` into one vendor's HTTP JSON
and translates that vendor's streaming chunks back into ``StreamEvent``s. The
request/stream plumbing lives here once:

- one hard deadline per call, covering connect, headers and every read
- ``data:`` SSE framing, where a malformed line or chunk is skipped rather than fatal
- exactly one terminal event per stream: ``done`` or ``error``

Vendors only supply payload building, response parsing, a chunk decoder and
their native way of replaying tool calls and results.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, AsyncIterator, Callable, Sequence
from typing import Any, ClassVar

import httpx
from mcp import McpError, types

from saga_gm.chat.models import (
    ApiFormat,
    DoneEvent,
    ErrorEvent,
    LLMConfig,
    LLMRequest,
    LLMResponse,
    NormalizedMessage,
    StopReason,
    StreamEvent,
    TokenUsage,
    ToolCall,
    ToolCallEndEvent,
    ToolResult,
)
from saga_gm.chat.tool_call_accumulator import ToolCallAccumulator

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 180.0


def parse_sse_line(line: str) -> dict[str, Any] | None:
    """
    Decode one SSE line into a JSON object.

    Returns None for blank lines, comments, ``event:`` lines, the ``[DONE]``
    sentinel and anything that is not a JSON object.
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None

    data = line[5:].strip()
    if not data or data == "[DONE]":
        return None

    try:
        chunk = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed SSE line: %.200s", line)
        return None

    if not isinstance(chunk, dict):
        logger.debug("Skipping non-object SSE payload: %.200s", line)
        return None
    return chunk


def text_of(value: Any) -> str | None:
    """Return ``value`` when it is non-empty text; relays sometimes send lists or objects."""
    if isinstance(value, str) and value:
        return value
    if value:
        logger.debug("Ignoring non-text content of type %s", type(value).__name__)
    return None


def arguments_text(value: Any) -> str | None:
    """Tool arguments as a JSON string, serializing relays that send an object."""
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, dict | list):
        return json.dumps(value, ensure_ascii=False)
    logger.debug("Ignoring tool arguments of type %s", type(value).__name__)
    return None


class StreamDecoder(ABC):
    """Per-call decoder state for one vendor's streaming chunks."""

    def __init__(self, map_stop_reason: Callable[[str | None], StopReason | None]) -> None:
        self.map_stop_reason = map_stop_reason
        self.accumulator = ToolCallAccumulator()
        self.stop_reason: StopReason | None = None
        self.usage: TokenUsage | None = None
        self._tool_calls_emitted = 0

    @abstractmethod
    def feed(self, chunk: dict[str, Any]) -> list[StreamEvent]:
        """Translate one decoded chunk into zero or more events."""

    def decode(self, chunk: dict[str, Any]) -> list[StreamEvent]:
        events = self.feed(chunk)
        self._note(events)
        return events

    def close(self) -> list[StreamEvent]:
        """Flush open tool calls and produce the terminal ``done`` event."""
        events = self.accumulator.finish_all()
        self._note(events)
        stop_reason = self.stop_reason or "end"
        if stop_reason == "end" and self._tool_calls_emitted:
            stop_reason = "tool_use"
        events.append(DoneEvent(stop_reason=stop_reason, usage=self.usage))
        return events

    def _note(self, events: list[StreamEvent]) -> None:
        self._tool_calls_emitted += sum(
            1 for event in events if isinstance(event, ToolCallEndEvent)
        )


class LLMAdapter(ABC):
    """One vendor wire protocol behind the normalized chat contract."""

    api_format: ClassVar[ApiFormat]
    stop_reasons: ClassVar[dict[str, StopReason]] = {}

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._http_client = http_client
        self.timeout_seconds = timeout_seconds

    # ------------------------------------------------------------------
    # Vendor hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def endpoint(self, request: LLMRequest, config: LLMConfig, *, stream: bool) -> str:
        """Absolute URL for a (streaming) call."""

    @abstractmethod
    def build_headers(self, config: LLMConfig) -> dict[str, str]:
        """Authentication and vendor headers."""

    @abstractmethod
    def build_payload(
        self, request: LLMRequest, config: LLMConfig, *, stream: bool
    ) -> dict[str, Any]:
        """Vendor JSON body for the request."""

    @abstractmethod
    def parse_response(self, data: dict[str, Any]) -> LLMResponse:
        """Translate a non-streaming response body."""

    @abstractmethod
    def new_stream_decoder(self) -> StreamDecoder:
        """Fresh decoder for one streaming call."""

    @staticmethod
    def resolve_sampling(request: LLMRequest, config: LLMConfig) -> tuple[float, int]:
        """Request-level temperature/max tokens win over the resolved config."""
        temperature = request.temperature if request.temperature is not None else config.temperature
        max_tokens = request.max_tokens if request.max_tokens is not None else config.max_tokens
        return temperature, max_tokens

    def map_stop_reason(self, raw: str | None) -> StopReason | None:
        """Translate a vendor finish reason into the shared enum."""
        if raw is None:
            return None
        mapped = self.stop_reasons.get(raw)
        if mapped is None:
            logger.debug("Unknown %s stop reason %r, treating as end", self.api_format, raw)
            return "end"
        return mapped

    def append_tool_result(
        self,
        messages: Sequence[NormalizedMessage],
        calls: Sequence[ToolCall],
        results: Sequence[ToolResult],
    ) -> list[NormalizedMessage]:
        """
        Return ``messages`` plus one assistant message carrying ``calls`` and
        one tool-result message per result, in call order.
        """
        updated = list(messages)
        updated.append(NormalizedMessage.assistant("", tool_calls=list(calls)))
        for result in results:
            updated.append(
                NormalizedMessage.tool_result(result.tool_call_id, result.content, result.is_error)
            )
        return updated

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self.timeout_seconds, trust_env=False) as client:
            yield client

    async def chat(self, request: LLMRequest, config: LLMConfig) -> LLMResponse:
        """Non-streaming call; raises McpError on any failure."""
        url = self.endpoint(request, config, stream=False)
        payload = self.build_payload(request, config, stream=False)
        headers = self.build_headers(config)

        logger.info("→ LLM[%s]: POST %s (model=%s)", self.api_format, url, request.model)
        try:
            async with self._client() as client, asyncio.timeout(self.timeout_seconds):
                response = await client.post(url, json=payload, headers=headers)
        except TimeoutError as e:
            raise McpError(
                error=types.ErrorData(
                    code=types.INTERNAL_ERROR,
                    message=f"LLM request timed out after {self.timeout_seconds:g}s",
                )
            ) from e
        except httpx.HTTPError as e:
            logger.error("HTTP error calling %s: %s", self.api_format, e)
            raise McpError(
                error=types.ErrorData(code=types.INTERNAL_ERROR, message=f"HTTP error: {e!s}")
            ) from e

        if response.status_code >= 400:
            raise McpError(
                error=types.ErrorData(
                    code=types.INTERNAL_ERROR,
                    message=f"{self.api_format} API error {response.status_code}: {response.text[:500]}",
                )
            )

        try:
            data = response.json()
            result = self.parse_response(data)
        except (ValueError, KeyError, TypeError, IndexError) as e:
            raise McpError(
                error=types.ErrorData(
                    code=types.PARSE_ERROR,
                    message=f"Unexpected response format: {e!s}",
                )
            ) from e

        logger.info(
            "← LLM[%s]: response received, stop_reason=%s, tool_calls=%d",
            self.api_format,
            result.stop_reason,
            len(result.tool_calls),
        )
        return result

    async def chat_stream(
        self, request: LLMRequest, config: LLMConfig
    ) -> AsyncGenerator[StreamEvent]:
        """
        Stream normalized events for one call.

        Transport and vendor failures are reported as a final ``ErrorEvent``;
        otherwise the stream ends with exactly one ``DoneEvent``.
        """
        url = self.endpoint(request, config, stream=True)
        payload = self.build_payload(request, config, stream=True)
        headers = {**self.build_headers(config), "Accept": "text/event-stream"}
        decoder = self.new_stream_decoder()
        deadline = asyncio.get_running_loop().time() + self.timeout_seconds

        logger.info("→ LLM[%s]: starting streaming request (model=%s)", self.api_format, request.model)
        try:
            async with contextlib.AsyncExitStack() as stack:
                client = await stack.enter_async_context(self._client())
                async with asyncio.timeout_at(deadline):
                    response = await stack.enter_async_context(
                        client.stream("POST", url, json=payload, headers=headers)
                    )

                if response.status_code != 200:
                    async with asyncio.timeout_at(deadline):
                        body = (await response.aread()).decode("utf-8", errors="replace")
                    logger.error(
                        "← LLM[%s]: streaming API error %d: %.500s",
                        self.api_format,
                        response.status_code,
                        body,
                    )
                    yield ErrorEvent(
                        message=f"{self.api_format} API error {response.status_code}: {body[:500]}"
                    )
                    return

                lines = response.aiter_lines()
                while True:
                    async with asyncio.timeout_at(deadline):
                        try:
                            line = await anext(lines)
                        except StopAsyncIteration:
                            break

                    chunk = parse_sse_line(line)
                    if chunk is None:
                        continue
                    try:
                        events = decoder.decode(chunk)
                    except (AttributeError, TypeError, KeyError, ValueError) as e:
                        logger.debug(
                            "Skipping malformed %s chunk (%s): %.200s", self.api_format, e, line
                        )
                        continue
                    for event in events:
                        yield event
                        if isinstance(event, ErrorEvent):
                            return

                for event in decoder.close():
                    yield event

            logger.info("← LLM[%s]: streaming completed, stop_reason=%s", self.api_format, decoder.stop_reason)
        except TimeoutError:
            logger.error("← LLM[%s]: request timed out after %gs", self.api_format, self.timeout_seconds)
            yield ErrorEvent(message=f"request timed out after {self.timeout_seconds:g}s")
        except httpx.HTTPError as e:
            logger.error("← LLM[%s]: HTTP error during streaming: %s", self.api_format, e)
            yield ErrorEvent(message=f"HTTP error: {e!s}")
