"""Google Gemini wire adapter (``generateContent`` / ``streamGenerateContent?alt=sse``)."""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import Sequence
from typing import Any, ClassVar

from saga_gm.chat.models import (
    ApiFormat,
    LLMConfig,
    LLMRequest,
    LLMResponse,
    NormalizedMessage,
    StopReason,
    StreamEvent,
    TextEvent,
    TokenUsage,
    ToolCall,
    ToolResult,
)
from saga_gm.clients.base_adapter import LLMAdapter, StreamDecoder, arguments_text, text_of


def synthesize_call_id() -> str:
    """Gemini function calls carry no id; make one that is unique per request."""
    return f"call_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


def _usage(raw: dict[str, Any] | None) -> TokenUsage | None:
    if not raw:
        return None
    return TokenUsage(
        input_tokens=raw.get("promptTokenCount") or 0,
        output_tokens=raw.get("candidatesTokenCount") or 0,
    )


class GoogleStreamDecoder(StreamDecoder):
    """Each SSE chunk is a full ``GenerateContentResponse`` fragment."""

    def feed(self, chunk: dict[str, Any]) -> list[StreamEvent]:
        events: list[StreamEvent] = []

        usage = _usage(chunk.get("usageMetadata"))
        if usage:
            self.usage = usage

        candidates: list[dict[str, Any]] = chunk.get("candidates") or []
        if not candidates:
            return events

        candidate = candidates[0]
        for part in (candidate.get("content") or {}).get("parts") or []:
            if not isinstance(part, dict):
                continue
            text = text_of(part.get("text"))
            if text:
                events.append(TextEvent(content=text))
            function_call = part.get("functionCall")
            if isinstance(function_call, dict):
                call_id = synthesize_call_id()
                events.extend(
                    self.accumulator.feed(
                        call_id,
                        call_id=call_id,
                        name=function_call.get("name"),
                        args_delta=arguments_text(function_call.get("args")) or "{}",
                    )
                )
                events.extend(self.accumulator.finish(call_id))

        finish_reason = candidate.get("finishReason")
        if finish_reason:
            self.stop_reason = self.map_stop_reason(finish_reason)

        return events


class GoogleAdapter(LLMAdapter):
    """Gemini native format: ``contents`` with user/model roles and function parts."""

    api_format: ClassVar[ApiFormat] = "google"
    stop_reasons: ClassVar[dict[str, StopReason]] = {
        "STOP": "end",
        "MAX_TOKENS": "max_tokens",
        "SAFETY": "error",
        "RECITATION": "error",
        "BLOCKLIST": "error",
        "PROHIBITED_CONTENT": "error",
        "SPII": "error",
        "MALFORMED_FUNCTION_CALL": "error",
    }

    def endpoint(self, request: LLMRequest, config: LLMConfig, *, stream: bool) -> str:
        base = f"{config.base_url.rstrip('/')}/v1beta/models/{request.model}"
        if stream:
            return f"{base}:streamGenerateContent?alt=sse"
        return f"{base}:generateContent"

    def build_headers(self, config: LLMConfig) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {config.api_key}",
            **config.extra_headers,
        }

    def build_payload(
        self, request: LLMRequest, config: LLMConfig, *, stream: bool
    ) -> dict[str, Any]:
        temperature, max_tokens = self.resolve_sampling(request, config)
        payload: dict[str, Any] = {
            "contents": self.to_gemini_contents(request.messages),
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_tokens,
            },
        }
        if request.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}
        if request.tools:
            payload["tools"] = [
                {
                    "functionDeclarations": [
                        {
                            "name": tool.name,
                            "description": tool.description,
                            "parameters": tool.parameters,
                        }
                        for tool in request.tools
                    ]
                }
            ]
        return payload

    @staticmethod
    def to_gemini_contents(messages: list[NormalizedMessage]) -> list[dict[str, Any]]:
        result: list[dict[str, Any]] = []
        for msg in messages:
            if msg.role == "system":
                continue
            if msg.role == "user":
                result.append({"role": "user", "parts": [{"text": msg.content}]})
            elif msg.role == "assistant":
                parts: list[dict[str, Any]] = []
                if msg.content:
                    parts.append({"text": msg.content})
                for call in msg.tool_calls or []:
                    parts.append({"functionCall": {"name": call.name, "args": call.arguments}})
                if parts:
                    result.append({"role": "model", "parts": parts})
            else:
                try:
                    response = json.loads(msg.content)
                except json.JSONDecodeError:
                    response = {"result": msg.content}
                if not isinstance(response, dict):
                    response = {"result": response}
                part = {
                    "functionResponse": {
                        "name": msg.tool_call_id or "unknown",
                        "response": response,
                    }
                }
                last = result[-1] if result else None
                if last and last["role"] == "user":
                    last["parts"].append(part)
                else:
                    result.append({"role": "user", "parts": [part]})
        return result

    def append_tool_result(
        self,
        messages: Sequence[NormalizedMessage],
        calls: Sequence[ToolCall],
        results: Sequence[ToolResult],
    ) -> list[NormalizedMessage]:
        """
        Gemini matches a ``functionResponse`` to its call by function name, so
        the tool-result messages carry the tool name where other vendors keep
        the call id.
        """
        names = {call.id: call.name for call in calls}
        updated = list(messages)
        updated.append(NormalizedMessage.assistant("", tool_calls=list(calls)))
        for result in results:
            updated.append(
                NormalizedMessage.tool_result(
                    names.get(result.tool_call_id, result.tool_call_id),
                    result.content,
                    result.is_error,
                )
            )
        return updated

    def parse_response(self, data: dict[str, Any]) -> LLMResponse:
        candidates = data.get("candidates") or []
        if not candidates:
            raise ValueError("Gemini API returned no candidates")

        candidate = candidates[0]
        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for part in (candidate.get("content") or {}).get("parts") or []:
            if text_of(part.get("text")):
                text_parts.append(part["text"])
            function_call = part.get("functionCall")
            if function_call and function_call.get("name"):
                tool_calls.append(
                    ToolCall(
                        id=synthesize_call_id(),
                        name=function_call["name"],
                        arguments=function_call.get("args") or {},
                    )
                )

        stop_reason = self.map_stop_reason(candidate.get("finishReason")) or "end"
        if tool_calls and stop_reason == "end":
            stop_reason = "tool_use"

        return LLMResponse(
            content="".join(text_parts),
            tool_calls=tool_calls,
            stop_reason=stop_reason,
            usage=_usage(data.get("usageMetadata")),
        )

    def new_stream_decoder(self) -> StreamDecoder:
        return GoogleStreamDecoder(self.map_stop_reason)
