"""
Streaming Generation Pass

Runs one generation pass of the Game Master's tool loop:
- streams the model's reply through the narrative buffer to the client
- collects completed tool calls and executes them in call order
- emits each tool's call, state update and result to the client
- persists tool results and feeds them back to the model in the vendor's shape
- loops into a new streaming call until the model answers without tools

The pass never decides about retries. A provider failure surfaces as
``GenerationError`` and the orchestrator decides what the client sees.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel, Field

from saga_gm.chat.logging_utils import log_llm_reply
from saga_gm.chat.models import (
    ClientEvent,
    DoneEvent,
    ErrorEvent,
    LLMConfig,
    LLMRequest,
    NormalizedMessage,
    StopReason,
    StreamEvent,
    TextEvent,
    TokenUsage,
    ToolCall,
    ToolCallEndEvent,
    ToolCallStartEvent,
    ToolExecutionResult,
    ToolResult,
)
from saga_gm.chat.narrative_buffer import NarrativeBuffer
from saga_gm.history.models import ChatEvent

if TYPE_CHECKING:
    from saga_gm.chat.tool_executor import ToolExecutor
    from saga_gm.clients.llm_client import LLMClient
    from saga_gm.config import GameMasterSettings
    from saga_gm.history.repository import ChatRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

EmitFn = Callable[[ClientEvent], Awaitable[None]]

# Shielded tool calls outlive a cancelled pass; keep them referenced.
_background_tasks: set[asyncio.Future[Any]] = set()


class GenerationError(Exception):
    """The model call of a generation pass failed."""


class PassResult(BaseModel):
    """What one generation pass produced."""

    text: str = ""
    tool_names: list[str] = Field(default_factory=list)
    messages: list[NormalizedMessage] = Field(default_factory=list)
    stop_reason: StopReason | None = None
    usage: TokenUsage = Field(default_factory=TokenUsage)


class StreamingHandler:
    """Handles streaming responses and tool call rounds for one pass."""

    def __init__(
        self,
        llm_client: LLMClient,
        tool_executor: ToolExecutor,
        repo: ChatRepository,
        settings: GameMasterSettings,
    ) -> None:
        self.llm_client = llm_client
        self.tool_executor = tool_executor
        self.repo = repo
        self.settings = settings

    async def run_pass(
        self,
        *,
        request: LLMRequest,
        config: LLMConfig,
        actor_id: str,
        conversation_id: str,
        request_id: str,
        emit: EmitFn,
    ) -> PassResult:
        """
        Stream, execute tools and repeat until the model stops calling tools.

        Args:
            request: Model, system prompt, messages and tools for the pass
            config: Resolved connection settings, read-only for the pass
            actor_id: Player on whose behalf tools run
            conversation_id: History key for persisted tool results
            request_id: Id of the user turn this pass belongs to
            emit: Writes one client event; may raise on client disconnect

        Raises:
            GenerationError: The model stream reported an error or broke, or the model
                kept calling tools past the round limit
        """
        buffer = NarrativeBuffer(self.settings.narrative_buffer_limit)
        messages = list(request.messages)
        result = PassResult()
        text_parts: list[str] = []
        max_rounds = self.settings.max_tool_rounds

        for round_index in range(max_rounds + 1):
            stream_request = request.model_copy(update={"messages": messages})
            calls: list[ToolCall] = []

            logger.info("→ LLM: starting generation round %d (model=%s)", round_index, request.model)
            async for event in self._model_events(stream_request, config):
                if isinstance(event, TextEvent):
                    visible = buffer.push(event.content)
                    if visible:
                        text_parts.append(visible)
                        await emit(ClientEvent(type="text", data={"content": visible}))
                elif isinstance(event, ToolCallStartEvent):
                    buffer.on_tool_call_start()
                elif isinstance(event, ToolCallEndEvent):
                    calls.append(event.to_tool_call())
                elif isinstance(event, DoneEvent):
                    tail = buffer.flush()
                    if tail:
                        text_parts.append(tail)
                        await emit(ClientEvent(type="text", data={"content": tail}))
                    result.stop_reason = event.stop_reason
                    if event.usage:
                        result.usage.input_tokens += event.usage.input_tokens
                        result.usage.output_tokens += event.usage.output_tokens
                    if event.stop_reason == "max_tokens":
                        logger.warning("← LLM: reply truncated at max_tokens (%d)", config.max_tokens)
                elif isinstance(event, ErrorEvent):
                    logger.error("← LLM: generation round %d failed: %s", round_index, event.message)
                    raise GenerationError(event.message)

            if not calls:
                break
            if round_index >= max_rounds:
                logger.warning("Tool call limit exceeded (%d rounds)", max_rounds)
                raise GenerationError("tool call limit exceeded")

            tool_results: list[ToolResult] = []
            for call in calls:
                await emit(ClientEvent(type="tool_call", data={"tool": call.name}))
                outcome = await self._run_shielded(
                    self._execute_and_record(call, actor_id, conversation_id, request_id)
                )
                if call.name not in result.tool_names:
                    result.tool_names.append(call.name)
                if outcome.state_update:
                    await emit(ClientEvent(type="state_update", data=outcome.state_update))
                await emit(
                    ClientEvent(
                        type="tool_result",
                        data={"tool": call.name, "success": outcome.success},
                    )
                )
                tool_results.append(
                    ToolResult(
                        tool_call_id=call.id,
                        content=outcome.to_content(),
                        is_error=not outcome.success,
                    )
                )

            messages = self.llm_client.append_tool_result(request.model, messages, calls, tool_results)
            logger.info("→ LLM: requesting follow-up after %d tool result(s)", len(tool_results))

        result.text = "".join(text_parts)
        result.messages = messages
        log_llm_reply(result.text, result.tool_names, f"request {request_id}", request.model)
        return result

    async def _model_events(
        self, request: LLMRequest, config: LLMConfig
    ) -> AsyncIterator[StreamEvent]:
        """Model stream events; a stream that breaks mid-read fails the pass."""
        try:
            async for event in self.llm_client.chat_stream(request, config):
                yield event
        except (AttributeError, TypeError, KeyError, ValueError) as e:
            logger.exception("← LLM: model stream broke")
            raise GenerationError(f"malformed model stream: {e}") from e

    async def _execute_and_record(
        self,
        call: ToolCall,
        actor_id: str,
        conversation_id: str,
        request_id: str,
    ) -> ToolExecutionResult:
        outcome = await self.tool_executor.execute(call.name, call.arguments, actor_id)
        await self.repo.add_event(
            ChatEvent(
                conversation_id=conversation_id,
                type="tool_result",
                role="tool",
                content=outcome.to_content(),
                tool_name=call.name,
                extra={
                    "tool_call_id": call.id,
                    "success": outcome.success,
                    "request_id": f"tool:{request_id}:{call.id}",
                },
            )
        )
        return outcome

    async def _run_shielded(self, coro: Coroutine[Any, Any, T]) -> T:
        """Await ``coro`` so that cancelling the caller does not cancel it."""
        task = asyncio.ensure_future(coro)
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        return await asyncio.shield(task)
