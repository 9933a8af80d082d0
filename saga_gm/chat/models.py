"""
Game Master Data Models

Data structures shared by the wire adapters, the streaming tool loop and the
client-facing event stream. Everything that crosses a component boundary is a
Pydantic model; stream events are a discriminated union keyed on ``type`` so
consumers can match on the concrete class instead of inspecting strings.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

ApiFormat = Literal["openai", "anthropic", "google"]
StopReason = Literal["end", "tool_use", "max_tokens", "error"]
MessageRole = Literal["system", "user", "assistant", "tool_result"]


# ==============================================================================
# CONVERSATION MESSAGES
# ==============================================================================


class ToolCall(BaseModel):
    """A complete tool call requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class NormalizedMessage(BaseModel):
    """Provider-agnostic conversation message, replayed to the model in order."""

    role: MessageRole
    content: str = ""
    tool_call_id: str | None = None
    tool_calls: list[ToolCall] | None = None
    is_error: bool = False

    @field_validator("tool_calls")
    @classmethod
    def validate_tool_calls(cls, v: list[ToolCall] | None) -> list[ToolCall] | None:
        """Convert empty tool_calls list to None to avoid API errors."""
        if v is not None and len(v) == 0:
            return None
        return v

    @classmethod
    def system(cls, content: str) -> NormalizedMessage:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> NormalizedMessage:
        return cls(role="user", content=content)

    @classmethod
    def assistant(
        cls, content: str = "", tool_calls: list[ToolCall] | None = None
    ) -> NormalizedMessage:
        return cls(role="assistant", content=content, tool_calls=tool_calls)

    @classmethod
    def tool_result(
        cls, tool_call_id: str, content: str, is_error: bool = False
    ) -> NormalizedMessage:
        return cls(
            role="tool_result", content=content, tool_call_id=tool_call_id, is_error=is_error
        )


class NormalizedTool(BaseModel):
    """Capability offered to the model: name, description and JSON Schema."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


class ToolResult(BaseModel):
    """Tool output returned to the model, one per ToolCall with the same id."""

    tool_call_id: str
    content: str
    is_error: bool = False


# ==============================================================================
# REQUEST / RESPONSE
# ==============================================================================


class TokenUsage(BaseModel):
    """Token usage information."""

    input_tokens: int = 0
    output_tokens: int = 0


class LLMRequest(BaseModel):
    """Normalized request accepted by every wire adapter."""

    model: str
    system_prompt: str = ""
    messages: list[NormalizedMessage] = Field(default_factory=list)
    tools: list[NormalizedTool] | None = None
    temperature: float | None = None
    max_tokens: int | None = None


class LLMResponse(BaseModel):
    """Non-streaming response from a wire adapter."""

    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    stop_reason: StopReason = "end"
    usage: TokenUsage | None = None


class LLMConfig(BaseModel):
    """Fully resolved connection settings, immutable for one request."""

    model_config = ConfigDict(frozen=True)

    api_key: str
    base_url: str
    model: str
    temperature: float = 0.7
    max_tokens: int = 4096
    extra_headers: dict[str, str] = Field(default_factory=dict)
    api_format: ApiFormat = "openai"
    provider_id: str = "tuzi"


# ==============================================================================
# PROVIDER STREAM EVENTS
# ==============================================================================


class TextEvent(BaseModel):
    type: Literal["text"] = "text"
    content: str


class ToolCallStartEvent(BaseModel):
    type: Literal["tool_call_start"] = "tool_call_start"
    id: str
    name: str


class ToolCallArgsDeltaEvent(BaseModel):
    type: Literal["tool_call_args_delta"] = "tool_call_args_delta"
    id: str
    args_delta: str


class ToolCallEndEvent(BaseModel):
    type: Literal["tool_call_end"] = "tool_call_end"
    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)

    def to_tool_call(self) -> ToolCall:
        return ToolCall(id=self.id, name=self.name, arguments=self.arguments)


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"
    stop_reason: StopReason | None = None
    usage: TokenUsage | None = None


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    message: str


StreamEvent = Annotated[
    TextEvent
    | ToolCallStartEvent
    | ToolCallArgsDeltaEvent
    | ToolCallEndEvent
    | DoneEvent
    | ErrorEvent,
    Field(discriminator="type"),
]


# ==============================================================================
# TOOL EXECUTION
# ==============================================================================


class ToolExecutionResult(BaseModel):
    """Outcome of one tool execution as seen by the orchestrator."""

    success: bool
    data: Any = None
    error: str | None = None
    state_update: dict[str, Any] | None = None

    def to_content(self) -> str:
        """Serialize the result into the text handed back to the model."""
        if self.success:
            payload: dict[str, Any] = {"success": True, "data": self.data}
        else:
            payload = {"success": False, "error": self.error or "unknown error"}
        return json.dumps(payload, ensure_ascii=False, default=str)


# ==============================================================================
# CLIENT-FACING EVENTS
# ==============================================================================

ClientEventType = Literal[
    "preparing",
    "thinking",
    "text",
    "tool_call",
    "tool_result",
    "state_update",
    "actions",
    "error",
    "done",
]

TERMINAL_EVENT_TYPES: frozenset[str] = frozenset({"done", "error"})
VISIBLE_EVENT_TYPES: frozenset[str] = frozenset(
    {"text", "tool_call", "tool_result", "state_update", "actions"}
)


class ClientEvent(BaseModel):
    """
    Frontend event written to the SSE stream as ``data: <json>``.
    Different from StreamEvent, which is the provider-side vocabulary.
    """

    type: ClientEventType
    data: Any = None

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    @property
    def is_visible(self) -> bool:
        return self.type in VISIBLE_EVENT_TYPES

    def to_sse(self) -> str:
        payload = json.dumps(
            {"type": self.type, "data": self.data}, ensure_ascii=False, default=str
        )
        return f"data: {payload}\n\n"
