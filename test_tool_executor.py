"""Tests for the tool execution boundary."""

import json

from mcp import types

from saga_gm.chat.models import ToolExecutionResult
from saga_gm.chat.tool_executor import McpToolExecutor, SafeToolExecutor, result_from_call_tool


def _text_result(text, is_error=False):
    return types.CallToolResult(content=[types.TextContent(type="text", text=text)], isError=is_error)


class FakeCatalog:
    def __init__(self, results):
        self.results = results
        self.calls = []

    def has_tool(self, name):
        return name in self.results

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        return self.results[name]


def test_json_payload_with_state_update():
    payload = {
        "success": True,
        "data": {"item": "rope"},
        "stateUpdate": {"inventory": ["rope"]},
    }
    result = result_from_call_tool(_text_result(json.dumps(payload)))
    assert result.success
    assert result.data == {"item": "rope"}
    assert result.state_update == {"inventory": ["rope"]}


def test_failure_payload():
    result = result_from_call_tool(_text_result('{"success": false, "error": "not enough gold"}'))
    assert not result.success
    assert result.error == "not enough gold"


def test_is_error_result_is_a_failure():
    result = result_from_call_tool(_text_result("boom", is_error=True))
    assert not result.success
    assert result.error == "boom"


def test_structured_content_is_preferred():
    res = types.CallToolResult(
        content=[types.TextContent(type="text", text="ignored")],
        structuredContent={"success": True, "data": 3, "state_update": {"gold": 7}},
    )
    result = result_from_call_tool(res)
    assert result.success
    assert result.data == 3
    assert result.state_update == {"gold": 7}


def test_plain_text_and_empty_results():
    assert result_from_call_tool(_text_result("The door opens.")).data == "The door opens."
    empty = result_from_call_tool(types.CallToolResult(content=[]))
    assert empty.success
    assert empty.data == "✓ done"


async def test_executor_injects_actor_id():
    catalog = FakeCatalog({"add_item": _text_result('{"success": true, "data": "ok"}')})
    executor = McpToolExecutor(catalog)

    result = await executor.execute("add_item", {"item": "torch", "player_id": "spoofed"}, "player-7")

    assert result.success
    assert catalog.calls == [("add_item", {"item": "torch", "player_id": "player-7"})]


async def test_executor_rejects_unknown_tool():
    executor = McpToolExecutor(FakeCatalog({}))
    result = await executor.execute("summon_dragon", {}, "player-7")
    assert not result.success
    assert "unknown tool" in result.error


async def test_safe_executor_converts_exceptions():
    class Exploding:
        async def execute(self, name, arguments, actor_id):
            raise RuntimeError("database is locked")

    result = await SafeToolExecutor(Exploding()).execute("add_item", {}, "p1")
    assert not result.success
    assert "database is locked" in result.error


async def test_safe_executor_passes_results_through():
    class Fixed:
        async def execute(self, name, arguments, actor_id):
            return ToolExecutionResult(success=True, data={"hp": 10})

    result = await SafeToolExecutor(Fixed()).execute("use_item", {}, "p1")
    assert result.success
    assert json.loads(result.to_content()) == {"success": True, "data": {"hp": 10}}
