"""
Unified LLM client.

Routes each request to the wire adapter for the model's API format and shares
one pooled HTTP/2 connection pool between the adapters. Callers see only the
normalized request/response/event types.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Callable, Sequence
from typing import TYPE_CHECKING, Any

import httpx
from mcp import McpError, types
from pydantic import BaseModel, Field

from saga_gm.chat.models import (
    ApiFormat,
    LLMConfig,
    LLMRequest,
    LLMResponse,
    NormalizedMessage,
    StreamEvent,
    TokenUsage,
    ToolCall,
    ToolResult,
)
from saga_gm.clients.anthropic_adapter import AnthropicAdapter
from saga_gm.clients.base_adapter import DEFAULT_TIMEOUT_SECONDS, LLMAdapter
from saga_gm.clients.google_adapter import GoogleAdapter
from saga_gm.clients.model_registry import api_format_for
from saga_gm.clients.openai_adapter import OpenAIAdapter

if TYPE_CHECKING:
    from saga_gm.chat.tool_executor import ToolExecutor

logger = logging.getLogger(__name__)


class ExecutedToolCall(BaseModel):
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    result: str


class ToolLoopResult(BaseModel):
    """Outcome of a non-streaming tool loop."""

    content: str
    tool_calls: list[ExecutedToolCall] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)


class LLMClient:
    """
    Facade over the three wire adapters.

    The format lookup is injectable so callers can route custom models; by
    default only the built-in model table is consulted.
    """

    def __init__(
        self,
        connection_pool_config: dict[str, Any] | None = None,
        format_resolver: Callable[[str], ApiFormat] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        pool = connection_pool_config or {}
        self.timeout_seconds: float = pool.get("request_timeout_seconds", DEFAULT_TIMEOUT_SECONDS)
        self._format_resolver = format_resolver or api_format_for
        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(
            timeout=self.timeout_seconds,
            http2=True,
            limits=httpx.Limits(
                max_connections=pool.get("max_connections", 50),
                max_keepalive_connections=pool.get("max_keepalive_connections", 20),
                keepalive_expiry=pool.get("keepalive_expiry_seconds", 300),
            ),
            trust_env=False,
        )
        self._adapters: dict[ApiFormat, LLMAdapter] = {
            "openai": OpenAIAdapter(self.client, self.timeout_seconds),
            "anthropic": AnthropicAdapter(self.client, self.timeout_seconds),
            "google": GoogleAdapter(self.client, self.timeout_seconds),
        }
        logger.info(
            "LLM client initialized (timeout=%gs, formats=%s)",
            self.timeout_seconds,
            ", ".join(self._adapters),
        )

    def adapter_for(self, model: str) -> LLMAdapter:
        """Adapter for ``model`` via the explicit model -> format table."""
        return self._adapters[self._format_resolver(model)]

    async def chat(self, request: LLMRequest, config: LLMConfig) -> LLMResponse:
        return await self.adapter_for(request.model).chat(request, config)

    def chat_stream(
        self, request: LLMRequest, config: LLMConfig
    ) -> AsyncGenerator[StreamEvent]:
        return self.adapter_for(request.model).chat_stream(request, config)

    def append_tool_result(
        self,
        model: str,
        messages: Sequence[NormalizedMessage],
        calls: Sequence[ToolCall],
        results: Sequence[ToolResult],
    ) -> list[NormalizedMessage]:
        return self.adapter_for(model).append_tool_result(messages, calls, results)

    async def chat_with_tools(
        self,
        request: LLMRequest,
        config: LLMConfig,
        executor: ToolExecutor,
        actor_id: str,
        max_rounds: int = 10,
    ) -> ToolLoopResult:
        """
        Non-streaming tool loop: call the model, run the requested tools in
        order, feed the results back and repeat until the model answers with
        plain text.

        Raises:
            McpError: If the model still requests tools after ``max_rounds``.
        """
        adapter = self.adapter_for(request.model)
        messages = list(request.messages)
        executed: list[ExecutedToolCall] = []
        usage = TokenUsage()

        for round_index in range(max_rounds):
            response = await adapter.chat(request.model_copy(update={"messages": messages}), config)
            if response.usage:
                usage.input_tokens += response.usage.input_tokens
                usage.output_tokens += response.usage.output_tokens

            if not response.tool_calls:
                return ToolLoopResult(content=response.content, tool_calls=executed, usage=usage)

            logger.info(
                "Tool round %d/%d: %d tool call(s)", round_index + 1, max_rounds, len(response.tool_calls)
            )
            results: list[ToolResult] = []
            for call in response.tool_calls:
                outcome = await executor.execute(call.name, call.arguments, actor_id)
                content = outcome.to_content()
                results.append(
                    ToolResult(tool_call_id=call.id, content=content, is_error=not outcome.success)
                )
                executed.append(ExecutedToolCall(name=call.name, arguments=call.arguments, result=content))

            messages = adapter.append_tool_result(messages, response.tool_calls, results)

        logger.warning("Tool call limit exceeded (%d rounds)", max_rounds)
        raise McpError(
            error=types.ErrorData(
                code=types.INTERNAL_ERROR,
                message=f"tool call limit exceeded after {max_rounds} rounds",
            )
        )

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> LLMClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()
