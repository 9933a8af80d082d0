"""Anthropic messages wire adapter (content-block streaming over ``/v1/messages``)."""

from __future__ import annotations

from typing import Any, ClassVar

from saga_gm.chat.models import (
    ApiFormat,
    ErrorEvent,
    LLMConfig,
    LLMRequest,
    LLMResponse,
    NormalizedMessage,
    StopReason,
    StreamEvent,
    TextEvent,
    TokenUsage,
    ToolCall,
)
from saga_gm.clients.base_adapter import LLMAdapter, StreamDecoder, arguments_text, text_of

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicStreamDecoder(StreamDecoder):
    """
    Decodes content-block events. Tool calls are keyed by block index, which
    is how ``input_json_delta`` and ``content_block_stop`` refer back to them.
    """

    def feed(self, chunk: dict[str, Any]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        event_type = chunk.get("type")
        index = chunk.get("index", 0)

        if event_type == "message_start":
            usage = (chunk.get("message") or {}).get("usage") or {}
            self.usage = TokenUsage(input_tokens=usage.get("input_tokens") or 0)

        elif event_type == "content_block_start":
            block: dict[str, Any] = chunk.get("content_block") or {}
            if block.get("type") == "tool_use":
                events.extend(
                    self.accumulator.feed(index, call_id=block.get("id"), name=block.get("name"))
                )
            elif block.get("type") == "text" and text_of(block.get("text")):
                events.append(TextEvent(content=block["text"]))

        elif event_type == "content_block_delta":
            delta: dict[str, Any] = chunk.get("delta") or {}
            if delta.get("type") == "text_delta" and text_of(delta.get("text")):
                events.append(TextEvent(content=delta["text"]))
            elif delta.get("type") == "input_json_delta":
                events.extend(
                    self.accumulator.feed(index, args_delta=arguments_text(delta.get("partial_json")))
                )

        elif event_type == "content_block_stop":
            events.extend(self.accumulator.finish(index))

        elif event_type == "message_delta":
            usage = chunk.get("usage") or {}
            if usage:
                self.usage = TokenUsage(
                    input_tokens=self.usage.input_tokens if self.usage else 0,
                    output_tokens=usage.get("output_tokens") or 0,
                )
            stop_reason = (chunk.get("delta") or {}).get("stop_reason")
            if stop_reason:
                self.stop_reason = self.map_stop_reason(stop_reason)

        elif event_type == "error":
            error: dict[str, Any] = chunk.get("error") or {}
            events.append(ErrorEvent(message=f"Anthropic stream error: {error.get('message', 'unknown')}"))

        return events


class AnthropicAdapter(LLMAdapter):
    """Claude models through the native messages API."""

    api_format: ClassVar[ApiFormat] = "anthropic"
    stop_reasons: ClassVar[dict[str, StopReason]] = {
        "end_turn": "end",
        "stop_sequence": "end",
        "tool_use": "tool_use",
        "max_tokens": "max_tokens",
        "refusal": "error",
    }

    def endpoint(self, request: LLMRequest, config: LLMConfig, *, stream: bool) -> str:
        return f"{config.base_url.rstrip('/')}/v1/messages"

    def build_headers(self, config: LLMConfig) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": config.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            **config.extra_headers,
        }

    def build_payload(
        self, request: LLMRequest, config: LLMConfig, *, stream: bool
    ) -> dict[str, Any]:
        temperature, max_tokens = self.resolve_sampling(request, config)
        system_parts = [request.system_prompt] if request.system_prompt else []
        system_parts += [m.content for m in request.messages if m.role == "system" and m.content]

        payload: dict[str, Any] = {
            "model": request.model,
            "max_tokens": max_tokens,
            "messages": self.to_anthropic_messages(request.messages),
            "temperature": temperature,
            "stream": stream,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if request.tools:
            payload["tools"] = [
                {
                    "name": tool.name,
                    "description": tool.description,
                    "input_schema": tool.parameters,
                }
                for tool in request.tools
            ]
        return payload

    @staticmethod
    def to_anthropic_messages(messages: list[NormalizedMessage]) -> list[dict[str, Any]]:
        """
        Convert to alternating user/assistant turns. Tool results become
        ``tool_result`` blocks merged into the following user turn.
        """
        result: list[dict[str, Any]] = []

        def append_user_block(block: dict[str, Any]) -> None:
            last = result[-1] if result else None
            if last and last["role"] == "user" and isinstance(last["content"], list):
                last["content"].append(block)
            else:
                result.append({"role": "user", "content": [block]})

        for msg in messages:
            if msg.role == "system":
                continue
            if msg.role == "user":
                last = result[-1] if result else None
                if last and last["role"] == "user" and isinstance(last["content"], list):
                    last["content"].append({"type": "text", "text": msg.content})
                else:
                    result.append({"role": "user", "content": msg.content})
            elif msg.role == "assistant":
                if msg.tool_calls:
                    blocks: list[dict[str, Any]] = []
                    if msg.content:
                        blocks.append({"type": "text", "text": msg.content})
                    for call in msg.tool_calls:
                        blocks.append(
                            {
                                "type": "tool_use",
                                "id": call.id,
                                "name": call.name,
                                "input": call.arguments,
                            }
                        )
                    result.append({"role": "assistant", "content": blocks})
                else:
                    result.append({"role": "assistant", "content": msg.content})
            else:
                block: dict[str, Any] = {
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id or "",
                    "content": msg.content,
                }
                if msg.is_error:
                    block["is_error"] = True
                append_user_block(block)
        return result

    def parse_response(self, data: dict[str, Any]) -> LLMResponse:
        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in data.get("content") or []:
            if block.get("type") == "text" and text_of(block.get("text")):
                text_parts.append(block["text"])
            elif block.get("type") == "tool_use" and block.get("id") and block.get("name"):
                tool_calls.append(
                    ToolCall(id=block["id"], name=block["name"], arguments=block.get("input") or {})
                )

        usage = data.get("usage") or {}
        return LLMResponse(
            content="".join(text_parts),
            tool_calls=tool_calls,
            stop_reason=self.map_stop_reason(data.get("stop_reason")) or "end",
            usage=TokenUsage(
                input_tokens=usage.get("input_tokens") or 0,
                output_tokens=usage.get("output_tokens") or 0,
            ),
        )

    def new_stream_decoder(self) -> StreamDecoder:
        return AnthropicStreamDecoder(self.map_stop_reason)
