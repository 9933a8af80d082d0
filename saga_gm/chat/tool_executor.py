"""
Tool Execution Boundary

Game tools run on MCP servers. This module turns a ``CallToolResult`` into the
``ToolExecutionResult`` the orchestrator works with and guarantees the
boundary never raises: any failure comes back as ``success=False``.

Tool servers answer with a JSON object of the shape
``{"success": bool, "data": ..., "error": str, "stateUpdate": {...}}``,
either as structured content or as a single text block. Anything else is
treated as opaque successful data.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Protocol

from mcp import types

from saga_gm.chat.logging_utils import (
    log_tool_arguments,
    log_tool_execution_error,
    log_tool_execution_start,
    log_tool_execution_success,
    log_tool_results,
)
from saga_gm.chat.models import ToolExecutionResult

if TYPE_CHECKING:
    from saga_gm.tool_catalog import ToolCatalog

logger = logging.getLogger(__name__)

DEFAULT_ACTOR_ARGUMENT = "player_id"


class ToolExecutor(Protocol):
    async def execute(
        self, name: str, arguments: dict[str, Any], actor_id: str
    ) -> ToolExecutionResult: ...


def pluck_text(res: types.CallToolResult) -> str:
    """Readable text of a tool result's content blocks."""
    out: list[str] = []
    for item in res.content:
        if isinstance(item, types.TextContent):
            out.append(item.text)
        elif isinstance(item, types.ImageContent):
            out.append(f"[Image: {item.mimeType}, {len(item.data)} bytes]")
        elif isinstance(item, types.EmbeddedResource):
            if isinstance(item.resource, types.TextResourceContents):
                out.append(item.resource.text)
            else:
                out.append(f"[Embedded resource: {type(item.resource).__name__}]")
        else:
            out.append(f"[{type(item).__name__}]")
    return "\n".join(out)


def _from_payload(payload: dict[str, Any]) -> ToolExecutionResult:
    state_update = payload.get("stateUpdate", payload.get("state_update"))
    return ToolExecutionResult(
        success=bool(payload["success"]),
        data=payload.get("data"),
        error=payload.get("error"),
        state_update=state_update if isinstance(state_update, dict) else None,
    )


def result_from_call_tool(res: types.CallToolResult) -> ToolExecutionResult:
    """Convert an MCP ``CallToolResult`` into a ``ToolExecutionResult``."""
    text = pluck_text(res)

    if res.isError:
        return ToolExecutionResult(success=False, error=text or "tool reported an error")

    structured = res.structuredContent
    if isinstance(structured, dict):
        if "success" in structured:
            return _from_payload(structured)
        return ToolExecutionResult(success=True, data=structured)

    if not text:
        return ToolExecutionResult(success=True, data="✓ done")

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return ToolExecutionResult(success=True, data=text)

    if isinstance(parsed, dict) and "success" in parsed:
        return _from_payload(parsed)
    return ToolExecutionResult(success=True, data=parsed)


class McpToolExecutor:
    """Executes game tools through the MCP tool catalog on behalf of an actor."""

    def __init__(
        self,
        catalog: ToolCatalog,
        actor_argument: str = DEFAULT_ACTOR_ARGUMENT,
        logging_config: dict[str, Any] | None = None,
    ) -> None:
        self.catalog = catalog
        self.actor_argument = actor_argument
        self.logging_config = logging_config or {}

    async def execute(
        self, name: str, arguments: dict[str, Any], actor_id: str
    ) -> ToolExecutionResult:
        if not self.catalog.has_tool(name):
            logger.warning("Model requested unknown tool '%s'", name)
            return ToolExecutionResult(success=False, error=f"unknown tool: {name}")

        call_args = {**arguments, self.actor_argument: actor_id}
        log_tool_arguments(
            name,
            call_args,
            f"actor {actor_id}",
            self.logging_config.get("tool_arguments_truncate", 500),
        )

        res = await self.catalog.call_tool(name, call_args)
        result = result_from_call_tool(res)
        log_tool_results(
            name,
            result.data if result.success else result.error,
            f"actor {actor_id}",
            self.logging_config.get("tool_results_truncate", 200),
        )
        return result


class SafeToolExecutor:
    """
    Wraps any executor so a tool failure is a value, not an exception.

    Cancellation still propagates; callers shield calls whose side effects
    must complete.
    """

    def __init__(self, inner: ToolExecutor) -> None:
        self.inner = inner

    async def execute(
        self, name: str, arguments: dict[str, Any], actor_id: str
    ) -> ToolExecutionResult:
        log_tool_execution_start(name)
        try:
            result = await self.inner.execute(name, arguments, actor_id)
        except Exception as e:
            error_msg = f"Tool execution failed: {e!s}"
            log_tool_execution_error(name, error_msg)
            return ToolExecutionResult(success=False, error=error_msg)

        if result.success:
            log_tool_execution_success(name, len(result.to_content()))
        else:
            log_tool_execution_error(name, result.error or "unknown error")
        return result
