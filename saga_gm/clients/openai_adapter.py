"""OpenAI chat-completions wire adapter (also used for OpenRouter and Grok)."""

from __future__ import annotations

import json
from collections.abc import Callable, Hashable
from typing import Any, ClassVar

from saga_gm.chat.models import (
    ApiFormat,
    LLMConfig,
    LLMRequest,
    LLMResponse,
    NormalizedMessage,
    NormalizedTool,
    StopReason,
    StreamEvent,
    TextEvent,
    TokenUsage,
    ToolCall,
)
from saga_gm.chat.tool_call_accumulator import parse_arguments, recover_name_from_id
from saga_gm.clients.base_adapter import LLMAdapter, StreamDecoder, arguments_text, text_of


def _usage(raw: dict[str, Any] | None) -> TokenUsage | None:
    if not raw:
        return None
    return TokenUsage(
        input_tokens=raw.get("prompt_tokens") or 0,
        output_tokens=raw.get("completion_tokens") or 0,
    )


class OpenAIStreamDecoder(StreamDecoder):
    """Decodes ``choices[0].delta`` chunks."""

    def __init__(self, map_stop_reason: Callable[[str | None], StopReason | None]) -> None:
        super().__init__(map_stop_reason)
        self._last_slot: Hashable = 0

    def feed(self, chunk: dict[str, Any]) -> list[StreamEvent]:
        events: list[StreamEvent] = []

        usage = _usage(chunk.get("usage"))
        if usage:
            self.usage = usage

        choices: list[dict[str, Any]] = chunk.get("choices") or []
        if not choices:
            return events

        choice = choices[0]
        if not isinstance(choice, dict):
            return events
        delta = choice.get("delta")
        if not isinstance(delta, dict):
            delta = {}

        content = text_of(delta.get("content"))
        if content:
            events.append(TextEvent(content=content))

        for tool_call_delta in delta.get("tool_calls") or []:
            if not isinstance(tool_call_delta, dict):
                continue
            function = tool_call_delta.get("function")
            if not isinstance(function, dict):
                function = {}
            slot = tool_call_delta.get("index")
            if slot is None:
                slot = tool_call_delta.get("id") or self._last_slot
            self._last_slot = slot
            events.extend(
                self.accumulator.feed(
                    slot,
                    call_id=tool_call_delta.get("id"),
                    name=function.get("name"),
                    args_delta=arguments_text(function.get("arguments")),
                )
            )

        finish_reason = choice.get("finish_reason")
        if finish_reason:
            self.stop_reason = self.map_stop_reason(finish_reason)
            events.extend(self.accumulator.finish_all())

        return events


class OpenAIAdapter(LLMAdapter):
    """Chat-completions deltas over ``/v1/chat/completions``."""

    api_format: ClassVar[ApiFormat] = "openai"
    stop_reasons: ClassVar[dict[str, StopReason]] = {
        "stop": "end",
        "tool_calls": "tool_use",
        "function_call": "tool_use",
        "length": "max_tokens",
        "content_filter": "error",
    }

    def endpoint(self, request: LLMRequest, config: LLMConfig, *, stream: bool) -> str:
        return f"{config.base_url.rstrip('/')}/v1/chat/completions"

    def build_headers(self, config: LLMConfig) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {config.api_key}",
            "Content-Type": "application/json",
            **config.extra_headers,
        }

    def build_payload(
        self, request: LLMRequest, config: LLMConfig, *, stream: bool
    ) -> dict[str, Any]:
        temperature, max_tokens = self.resolve_sampling(request, config)
        payload: dict[str, Any] = {
            "model": request.model,
            "messages": self.to_openai_messages(request.system_prompt, request.messages),
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": stream,
        }
        if stream:
            payload["stream_options"] = {"include_usage": True}
        if request.tools:
            payload["tools"] = [self.to_openai_tool(tool) for tool in request.tools]
            payload["tool_choice"] = "auto"
        return payload

    @staticmethod
    def to_openai_tool(tool: NormalizedTool) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters,
            },
        }

    @staticmethod
    def to_openai_messages(
        system_prompt: str, messages: list[NormalizedMessage]
    ) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = []
        if system_prompt:
            result.append({"role": "system", "content": system_prompt})

        for msg in messages:
            if msg.role == "tool_result":
                result.append(
                    {"role": "tool", "tool_call_id": msg.tool_call_id or "", "content": msg.content}
                )
            elif msg.role == "assistant" and msg.tool_calls:
                result.append(
                    {
                        "role": "assistant",
                        "content": msg.content or None,
                        "tool_calls": [
                            {
                                "id": call.id,
                                "type": "function",
                                "function": {
                                    "name": call.name,
                                    "arguments": json.dumps(call.arguments, ensure_ascii=False),
                                },
                            }
                            for call in msg.tool_calls
                        ],
                    }
                )
            else:
                result.append({"role": msg.role, "content": msg.content})
        return result

    def parse_response(self, data: dict[str, Any]) -> LLMResponse:
        choices = data.get("choices") or []
        if not choices:
            raise ValueError("No choices in API response")

        choice = choices[0]
        message: dict[str, Any] = choice.get("message") or {}
        tool_calls: list[ToolCall] = []
        for raw_call in message.get("tool_calls") or []:
            function = raw_call.get("function") or {}
            name = function.get("name") or recover_name_from_id(raw_call.get("id") or "")
            if not name:
                continue
            tool_calls.append(
                ToolCall(
                    id=raw_call.get("id") or f"call_{len(tool_calls)}",
                    name=name,
                    arguments=parse_arguments(name, arguments_text(function.get("arguments")) or ""),
                )
            )

        stop_reason = self.map_stop_reason(choice.get("finish_reason")) or "end"
        if tool_calls and stop_reason == "end":
            stop_reason = "tool_use"

        return LLMResponse(
            content=text_of(message.get("content")) or "",
            tool_calls=tool_calls,
            stop_reason=stop_reason,
            usage=_usage(data.get("usage")),
        )

    def new_stream_decoder(self) -> StreamDecoder:
        return OpenAIStreamDecoder(self.map_stop_reason)
