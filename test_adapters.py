"""Wire adapter tests against canned vendor responses served by httpx.MockTransport."""

import json

import httpx
import pytest
from mcp import McpError

from saga_gm.chat.models import (
    DoneEvent,
    ErrorEvent,
    LLMConfig,
    LLMRequest,
    NormalizedMessage,
    NormalizedTool,
    TextEvent,
    ToolCall,
    ToolCallEndEvent,
    ToolCallStartEvent,
    ToolExecutionResult,
    ToolResult,
)
from saga_gm.clients.anthropic_adapter import AnthropicAdapter
from saga_gm.clients.base_adapter import parse_sse_line
from saga_gm.clients.google_adapter import GoogleAdapter
from saga_gm.clients.llm_client import LLMClient
from saga_gm.clients.openai_adapter import OpenAIAdapter

CONFIG = LLMConfig(api_key="sk-test", base_url="https://llm.example", model="gpt-4o-mini")
TOOL = NormalizedTool(
    name="add_item",
    description="Put an item in the player's inventory",
    parameters={"type": "object", "properties": {"item": {"type": "string"}}},
)


def _sse(*chunks):
    body = "".join(f"data: {json.dumps(c) if not isinstance(c, str) else c}\n\n" for c in chunks)
    return body.encode()


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def _collect(adapter, request, config=CONFIG):
    return [event async for event in adapter.chat_stream(request, config)]


def _request(model="gpt-4o-mini", **kwargs):
    return LLMRequest(
        model=model,
        system_prompt="You are the Game Master.",
        messages=[NormalizedMessage.user("I pick up the rope")],
        tools=[TOOL],
        **kwargs,
    )


# -- SSE framing ---------------------------------------------------------------


def test_parse_sse_line():
    assert parse_sse_line('data: {"a": 1}') == {"a": 1}
    assert parse_sse_line("data: [DONE]") is None
    assert parse_sse_line(": keep-alive") is None
    assert parse_sse_line("event: message_start") is None
    assert parse_sse_line("data: {broken") is None
    assert parse_sse_line("data: [1, 2]") is None


# -- OpenAI --------------------------------------------------------------------


async def test_openai_stream_text_and_tool_call():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        body = _sse(
            {"choices": [{"index": 0, "delta": {"content": "You reach "}}]},
            {"choices": [{"index": 0, "delta": {"content": "down."}}]},
            {
                "choices": [
                    {
                        "index": 0,
                        "delta": {
                            "tool_calls": [
                                {"index": 0, "id": "call_1", "function": {"name": "add_item", "arguments": '{"it'}}
                            ]
                        },
                    }
                ]
            },
            {"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": 'em": "rope"}'}}]}}]},
            {"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]},
            {"choices": [], "usage": {"prompt_tokens": 30, "completion_tokens": 12}},
            "[DONE]",
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    async with _client(handler) as client:
        events = await _collect(OpenAIAdapter(client), _request())

    assert seen["url"] == "https://llm.example/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["stream"] is True
    assert seen["body"]["messages"][0] == {"role": "system", "content": "You are the Game Master."}
    assert seen["body"]["tools"][0]["function"]["name"] == "add_item"

    assert "".join(e.content for e in events if isinstance(e, TextEvent)) == "You reach down."
    (end,) = [e for e in events if isinstance(e, ToolCallEndEvent)]
    assert end.id == "call_1"
    assert end.arguments == {"item": "rope"}
    done = events[-1]
    assert isinstance(done, DoneEvent)
    assert done.stop_reason == "tool_use"
    assert done.usage.input_tokens == 30
    assert done.usage.output_tokens == 12


async def test_openai_repeated_id_on_every_chunk():
    def handler(request):
        chunks = [
            {
                "choices": [
                    {
                        "delta": {
                            "tool_calls": [{"id": "call_r", "function": {"name": "use_item", "arguments": part}}]
                        }
                    }
                ]
            }
            for part in ['{"item"', ': "pot', 'ion"}']
        ]
        chunks.append({"choices": [{"delta": {}, "finish_reason": "tool_calls"}]})
        return httpx.Response(200, content=_sse(*chunks))

    async with _client(handler) as client:
        events = await _collect(OpenAIAdapter(client), _request())

    starts = [e for e in events if isinstance(e, ToolCallStartEvent)]
    ends = [e for e in events if isinstance(e, ToolCallEndEvent)]
    assert len(starts) == 1
    assert len(ends) == 1
    assert ends[0].arguments == {"item": "potion"}


async def test_malformed_chunk_is_skipped():
    def handler(request):
        body = (
            b"data: {not json\n\n"
            + _sse({"choices": [{"delta": {"content": "still here"}, "finish_reason": "stop"}]})
        )
        return httpx.Response(200, content=body)

    async with _client(handler) as client:
        events = await _collect(OpenAIAdapter(client), _request())

    assert [e.content for e in events if isinstance(e, TextEvent)] == ["still here"]
    assert isinstance(events[-1], DoneEvent)
    assert events[-1].stop_reason == "end"


@pytest.mark.parametrize(
    "chunk",
    [
        {"choices": [None]},
        {"choices": [{"delta": "x"}]},
        {"choices": [{"delta": None}]},
        {"choices": [{"delta": {"content": ["a", "b"]}}]},
        {"choices": {"first": {"delta": {"content": "x"}}}},
        {"choices": [{"delta": {"tool_calls": [{"index": [0], "id": "c9"}]}}]},
        {"choices": [{"delta": {"tool_calls": ["add_item"]}}]},
    ],
)
async def test_wrong_shape_chunk_is_skipped(chunk):
    def handler(request):
        return httpx.Response(
            200,
            content=_sse(
                chunk,
                {"choices": [{"delta": {"content": "still here"}, "finish_reason": "stop"}]},
            ),
        )

    async with _client(handler) as client:
        events = await _collect(OpenAIAdapter(client), _request())

    assert [e.content for e in events if isinstance(e, TextEvent)] == ["still here"]
    assert [type(e) for e in events if isinstance(e, DoneEvent | ErrorEvent)] == [DoneEvent]
    assert events[-1].stop_reason == "end"


async def test_openai_arguments_sent_as_object():
    def handler(request):
        return httpx.Response(
            200,
            content=_sse(
                {
                    "choices": [
                        {
                            "delta": {
                                "tool_calls": [
                                    {
                                        "index": 0,
                                        "id": "call_obj",
                                        "function": {"name": "add_item", "arguments": {"item": "rope"}},
                                    }
                                ]
                            },
                            "finish_reason": "tool_calls",
                        }
                    ]
                }
            ),
        )

    async with _client(handler) as client:
        events = await _collect(OpenAIAdapter(client), _request())

    (end,) = [e for e in events if isinstance(e, ToolCallEndEvent)]
    assert end.name == "add_item"
    assert end.arguments == {"item": "rope"}
    assert events[-1].stop_reason == "tool_use"


async def test_vendor_error_becomes_single_error_event():
    def handler(request):
        return httpx.Response(502, text="upstream unavailable")

    async with _client(handler) as client:
        events = await _collect(OpenAIAdapter(client), _request())

    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)
    assert "502" in events[0].message


async def test_transport_error_becomes_error_event():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    async with _client(handler) as client:
        events = await _collect(OpenAIAdapter(client), _request())

    assert len(events) == 1
    assert isinstance(events[0], ErrorEvent)


async def test_non_streaming_chat_parses_tool_calls():
    def handler(request):
        return httpx.Response(
            200,
            json={
                "choices": [
                    {
                        "message": {
                            "content": None,
                            "tool_calls": [
                                {"id": "c1", "type": "function", "function": {"name": "add_item", "arguments": '{"item": "key"}'}}
                            ],
                        },
                        "finish_reason": "tool_calls",
                    }
                ],
                "usage": {"prompt_tokens": 5, "completion_tokens": 3},
            },
        )

    async with _client(handler) as client:
        response = await OpenAIAdapter(client).chat(_request(), CONFIG)

    assert response.stop_reason == "tool_use"
    assert response.tool_calls == [ToolCall(id="c1", name="add_item", arguments={"item": "key"})]


async def test_non_streaming_chat_raises_mcp_error():
    def handler(request):
        return httpx.Response(401, text="bad key")

    async with _client(handler) as client:
        with pytest.raises(McpError):
            await OpenAIAdapter(client).chat(_request(), CONFIG)


def test_append_tool_result_grows_history():
    adapter = OpenAIAdapter()
    messages = [NormalizedMessage.user("hi")]
    calls = [ToolCall(id="a", name="add_item"), ToolCall(id="b", name="use_item")]
    results = [ToolResult(tool_call_id="a", content="{}"), ToolResult(tool_call_id="b", content="{}")]

    updated = adapter.append_tool_result(messages, calls, results)

    assert len(updated) == len(messages) + 1 + len(results)
    assert updated[0] is messages[0]
    assert updated[1].role == "assistant"
    assert [m.tool_call_id for m in updated[2:]] == ["a", "b"]


# -- Anthropic -----------------------------------------------------------------


async def test_anthropic_stream_content_blocks():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        body = _sse(
            {"type": "message_start", "message": {"usage": {"input_tokens": 40}}},
            {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Steel rings."}},
            {"type": "content_block_stop", "index": 0},
            {
                "type": "content_block_start",
                "index": 1,
                "content_block": {"type": "tool_use", "id": "toolu_1", "name": "execute_battle_action"},
            },
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": '{"action"'}},
            {"type": "content_block_delta", "index": 1, "delta": {"type": "input_json_delta", "partial_json": ': "attack"}'}},
            {"type": "content_block_stop", "index": 1},
            {"type": "message_delta", "delta": {"stop_reason": "tool_use"}, "usage": {"output_tokens": 18}},
            {"type": "message_stop"},
        )
        return httpx.Response(200, content=body)

    async with _client(handler) as client:
        events = await _collect(AnthropicAdapter(client), _request(model="claude-haiku-4-5-20251001-thinking"))

    assert seen["url"] == "https://llm.example/v1/messages"
    assert seen["headers"]["x-api-key"] == "sk-test"
    assert seen["body"]["system"] == "You are the Game Master."
    assert seen["body"]["tools"][0]["input_schema"]["type"] == "object"

    assert [e.content for e in events if isinstance(e, TextEvent)] == ["Steel rings."]
    (end,) = [e for e in events if isinstance(e, ToolCallEndEvent)]
    assert end.name == "execute_battle_action"
    assert end.arguments == {"action": "attack"}
    assert events[-1].stop_reason == "tool_use"
    assert events[-1].usage.input_tokens == 40
    assert events[-1].usage.output_tokens == 18


def test_anthropic_tool_results_merge_into_user_turn():
    messages = AnthropicAdapter().append_tool_result(
        [NormalizedMessage.user("attack")],
        [ToolCall(id="t1", name="execute_battle_action", arguments={"action": "attack"})],
        [ToolResult(tool_call_id="t1", content='{"success": true}')],
    )
    converted = AnthropicAdapter.to_anthropic_messages(messages)

    assert [m["role"] for m in converted] == ["user", "assistant", "user"]
    assert converted[1]["content"][0]["type"] == "tool_use"
    assert converted[2]["content"][0] == {
        "type": "tool_result",
        "tool_use_id": "t1",
        "content": '{"success": true}',
    }


def test_anthropic_failed_tool_result_is_flagged():
    messages = AnthropicAdapter().append_tool_result(
        [NormalizedMessage.user("open the chest")],
        [ToolCall(id="t2", name="open_container", arguments={"target": "chest"})],
        [ToolResult(tool_call_id="t2", content='{"success": false}', is_error=True)],
    )
    converted = AnthropicAdapter.to_anthropic_messages(messages)

    assert messages[-1].is_error is True
    assert converted[2]["content"][0]["is_error"] is True


# -- Google --------------------------------------------------------------------


async def test_google_stream_function_call():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        body = _sse(
            {"candidates": [{"content": {"role": "model", "parts": [{"text": "The chest creaks open."}]}}]},
            {
                "candidates": [
                    {
                        "content": {"role": "model", "parts": [{"functionCall": {"name": "add_item", "args": {"item": "gem"}}}]},
                        "finishReason": "STOP",
                    }
                ],
                "usageMetadata": {"promptTokenCount": 22, "candidatesTokenCount": 9},
            },
        )
        return httpx.Response(200, content=body)

    async with _client(handler) as client:
        events = await _collect(GoogleAdapter(client), _request(model="gemini-3-pro"))

    assert seen["url"] == "https://llm.example/v1beta/models/gemini-3-pro:streamGenerateContent?alt=sse"
    assert seen["body"]["systemInstruction"] == {"parts": [{"text": "You are the Game Master."}]}
    assert seen["body"]["tools"][0]["functionDeclarations"][0]["name"] == "add_item"

    (end,) = [e for e in events if isinstance(e, ToolCallEndEvent)]
    assert end.name == "add_item"
    assert end.arguments == {"item": "gem"}
    assert end.id.startswith("call_")
    assert events[-1].stop_reason == "tool_use"


def test_google_tool_result_is_keyed_by_function_name():
    messages = GoogleAdapter().append_tool_result(
        [NormalizedMessage.user("open the chest")],
        [ToolCall(id="call_123_abcdef", name="add_item", arguments={"item": "gem"})],
        [ToolResult(tool_call_id="call_123_abcdef", content='{"success": true, "data": "gem"}')],
    )
    contents = GoogleAdapter.to_gemini_contents(messages)

    assert [c["role"] for c in contents] == ["user", "model", "user"]
    response_part = contents[2]["parts"][0]["functionResponse"]
    assert response_part["name"] == "add_item"
    assert response_part["response"] == {"success": True, "data": "gem"}


# -- LLM client routing --------------------------------------------------------


async def test_llm_client_routes_by_model_format():
    urls = []

    def handler(request):
        urls.append(request.url.path)
        return httpx.Response(200, content=_sse({"choices": [{"delta": {"content": "ok"}, "finish_reason": "stop"}]}))

    async with _client(handler) as http_client:
        llm = LLMClient(http_client=http_client)
        assert isinstance(llm.adapter_for("gpt-4o-mini"), OpenAIAdapter)
        assert isinstance(llm.adapter_for("claude-opus-4-5-20251101-thinking"), AnthropicAdapter)
        assert isinstance(llm.adapter_for("gemini-3-pro"), GoogleAdapter)
        assert isinstance(llm.adapter_for("some-unknown-model"), OpenAIAdapter)

        events = [e async for e in llm.chat_stream(_request(), CONFIG)]

    assert urls == ["/v1/chat/completions"]
    assert isinstance(events[-1], DoneEvent)


async def test_llm_client_tool_loop_limit():
    def handler(request):
        return httpx.Response(
            200,
            json={
                "choices": [
                    {
                        "message": {
                            "tool_calls": [{"id": "c", "function": {"name": "get_battle_state", "arguments": "{}"}}]
                        },
                        "finish_reason": "tool_calls",
                    }
                ]
            },
        )

    class Executor:
        def __init__(self):
            self.calls = 0

        async def execute(self, name, arguments, actor_id):
            self.calls += 1
            return ToolExecutionResult(success=True, data={"status": "none"})

    executor = Executor()
    async with _client(handler) as http_client:
        llm = LLMClient(http_client=http_client)
        with pytest.raises(McpError):
            await llm.chat_with_tools(_request(), CONFIG, executor, "p1", max_rounds=2)

    assert executor.calls == 2
