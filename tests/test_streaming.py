"""Tests for stream frame parsing, tool-call accumulation and the streaming adapter."""

import asyncio
import json

import httpx
import pytest

from conftest import FakeTransport, GatedTransport, sse, text_turn, tool_turn, wait_until
from orchestra.errors import ParseError, TransportError
from orchestra.history import HistoryManager, Message
from orchestra.history.message import TYPE_ERROR, TYPE_REPLY
from orchestra.providers.base import Credentials, ToolCallAccumulator, ToolCallDelta
from orchestra.providers.registry import find_by_name, parse_anthropic, parse_gemini, parse_openai
from orchestra.providers.streaming import StreamingModel, frame_payload
from orchestra.providers.transport import HttpStreamTransport


def _model(turns, provider: str = "openai", history: HistoryManager | None = None, gated: bool = False):
    transport = GatedTransport(turns) if gated else FakeTransport(turns)
    history = history or HistoryManager.create(system="sys")
    history.push([Message(role="user", content="Hello")])
    model = StreamingModel(
        descriptor=find_by_name(provider),
        transport=transport,
        credentials=Credentials(api_key="k"),
        endpoint="https://example.test/v1/chat/completions",
        model="test-model",
        history=history,
    )
    return model, transport, history


class TestFramePayload:
    def test_strips_data_prefix(self):
        assert frame_payload('data: {"a": 1}') == '{"a": 1}'

    def test_ignores_blank_comment_and_event_lines(self):
        assert frame_payload("") is None
        assert frame_payload("   ") is None
        assert frame_payload(": keep-alive") is None
        assert frame_payload("event: message_start") is None

    def test_done_marker_passes_through(self):
        assert frame_payload("data: [DONE]") == "[DONE]"


class TestAccumulator:
    def test_fragments_concatenate_by_index(self):
        acc = ToolCallAccumulator()
        acc.add(ToolCallDelta(index=0, id="a", name="f"))
        acc.add(ToolCallDelta(index=0, arguments='{"x":'))
        acc.add(ToolCallDelta(index=0, arguments="1}"))
        calls = acc.finalize()
        assert len(calls) == 1
        assert calls[0].id == "a"
        assert calls[0].name == "f"
        assert json.loads(calls[0].arguments) == {"x": 1}

    def test_missing_index_goes_to_most_recent(self):
        acc = ToolCallAccumulator()
        acc.add(ToolCallDelta(index=0, id="a", name="f", arguments=""))
        acc.add(ToolCallDelta(index=1, id="b", name="g", arguments="{"))
        acc.add(ToolCallDelta(arguments="}"))
        calls = acc.finalize()
        assert [c.id for c in calls] == ["a", "b"]
        assert calls[0].arguments == ""
        assert calls[1].arguments == "{}"

    def test_finalize_sorted_by_index(self):
        acc = ToolCallAccumulator()
        acc.add(ToolCallDelta(index=2, id="c", name="h"))
        acc.add(ToolCallDelta(index=0, id="a", name="f"))
        assert [c.index for c in acc.finalize()] == [0, 2]

    def test_orphan_fragment_dropped(self):
        acc = ToolCallAccumulator()
        acc.add(ToolCallDelta(index=0, arguments="{}"))
        assert acc.finalize() == []


class TestParsers:
    def test_openai_content_and_reasoning(self):
        frame = parse_openai(json.dumps({"choices": [{"delta": {"content": "hi", "reasoning_content": "hmm"}}]}))
        assert frame.content == "hi"
        assert frame.reasoning == "hmm"

    def test_openai_empty_choices(self):
        frame = parse_openai(json.dumps({"choices": []}))
        assert frame.content == "" and frame.tool_calls == []

    def test_openai_error_object(self):
        frame = parse_openai(json.dumps({"error": {"message": "quota exceeded"}}))
        assert frame.error == "quota exceeded"

    def test_anthropic_tool_use_block(self):
        start = parse_anthropic(json.dumps({
            "type": "content_block_start",
            "index": 1,
            "content_block": {"type": "tool_use", "id": "toolu_1", "name": "plugin-weather"},
        }))
        delta = parse_anthropic(json.dumps({
            "type": "content_block_delta",
            "index": 1,
            "delta": {"type": "input_json_delta", "partial_json": '{"city"'},
        }))
        assert start.tool_calls[0].id == "toolu_1"
        assert start.tool_calls[0].name == "plugin-weather"
        assert delta.tool_calls[0].index == 1
        assert delta.tool_calls[0].id is None

    def test_anthropic_text_and_thinking(self):
        text = parse_anthropic(json.dumps({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "a"}}))
        thinking = parse_anthropic(json.dumps({
            "type": "content_block_delta",
            "delta": {"type": "thinking_delta", "thinking": "b"},
        }))
        assert text.content == "a"
        assert thinking.reasoning == "b"

    def test_anthropic_error_event(self):
        frame = parse_anthropic(json.dumps({"type": "error", "error": {"message": "overloaded"}}))
        assert frame.error == "overloaded"

    def test_gemini_native_parts(self):
        frame = parse_gemini(json.dumps({"candidates": [{"content": {"parts": [
            {"text": "answer"},
            {"functionCall": {"name": "skill-search", "args": {"q": "x"}}},
        ]}}]}))
        assert frame.content == "answer"
        assert frame.tool_calls[0].name == "skill-search"
        assert json.loads(frame.tool_calls[0].arguments) == {"q": "x"}

    def test_gemini_falls_back_to_openai_format(self):
        frame = parse_gemini(json.dumps({"choices": [{"delta": {"content": "x"}}]}))
        assert frame.content == "x"


class TestStreamingModel:
    @pytest.mark.asyncio
    async def test_content_turn(self):
        model, transport, history = _model([text_turn("Hel", "lo")])
        events = []
        model.subscribe(events.append)

        result = await model.stream()

        assert result.content == "Hello"
        assert result.tool_calls == []
        last = history.get_last_message()
        assert last.content == "Hello"
        assert last.type == TYPE_REPLY
        assert last.loading is False
        assert [e.type for e in events] == ["content", "content", "done"]
        assert events[1].accumulated == "Hello"
        assert "tools" not in transport.bodies[0]
        assert model.current_request_id is None

    @pytest.mark.asyncio
    async def test_request_uses_windowed_history(self):
        model, transport, _ = _model([text_turn("ok")])
        await model.stream()
        assert transport.bodies[0]["messages"] == [
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "Hello"},
        ]

    @pytest.mark.asyncio
    async def test_tool_call_turn(self):
        model, transport, history = _model([tool_turn("plugin-weather", '{"city": "Paris"}', content="checking")])
        tools = [{"type": "function", "function": {"name": "plugin-weather", "parameters": {}}}]

        result = await model.stream(tools)

        assert transport.bodies[0]["tools"] == tools
        assert len(result.tool_calls) == 1
        call = result.tool_calls[0]
        assert call.id == "call_1"
        assert json.loads(call.arguments) == {"city": "Paris"}
        stored = history.get_last_message().tool_calls
        assert stored[0]["function"]["name"] == "plugin-weather"

    @pytest.mark.asyncio
    async def test_transport_error_recorded_and_raised(self):
        model, _, history = _model([TransportError("HTTP 500: boom")])
        events = []
        model.subscribe(events.append)

        with pytest.raises(TransportError):
            await model.stream()

        last = history.get_last_message()
        assert last.type == TYPE_ERROR
        assert last.content.startswith("请求失败:")
        assert events[-1].type == "error"
        assert len(history.list_without_type()) == 2

    @pytest.mark.asyncio
    async def test_error_frame_raises_transport_error(self):
        model, _, _ = _model([[sse({"error": {"message": "rate limited"}})]])
        with pytest.raises(TransportError, match="rate limited"):
            await model.stream()

    @pytest.mark.asyncio
    async def test_malformed_frame_skipped_when_allowed(self):
        turn = ["data: {broken", sse({"choices": [{"delta": {"content": "fine"}}]}), "data: [DONE]"]
        model, _, _ = _model([turn])
        result = await model.stream()
        assert result.content == "fine"

    @pytest.mark.asyncio
    async def test_malformed_frame_aborts_for_anthropic(self):
        model, _, history = _model([["data: {broken"]], provider="anthropic")
        with pytest.raises(ParseError):
            await model.stream()
        assert history.get_last_message().type == TYPE_ERROR

    @pytest.mark.asyncio
    async def test_subscriber_failure_does_not_break_stream(self):
        model, _, _ = _model([text_turn("a")])

        def broken(event):
            raise RuntimeError("subscriber bug")

        model.subscribe(broken)
        result = await model.stream()
        assert result.content == "a"

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        model, _, _ = _model([text_turn("a")])
        events = []
        unsubscribe = model.subscribe(events.append)
        unsubscribe()
        await model.stream()
        assert events == []

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        model, transport, _ = _model([])
        await model.stop()
        model.current_request_id = "req-1"
        await model.stop()
        await model.stop()
        assert transport.cancelled == ["req-1"]
        assert model.current_request_id is None


class TestStreamLifecycle:
    @pytest.mark.asyncio
    async def test_new_stream_waits_for_superseded_one(self):
        model, transport, history = _model([text_turn("first", " never"), text_turn("second")], gated=True)

        first_task = asyncio.create_task(model.stream())
        await wait_until(lambda: history.get_last_message().content == "first")
        first_message = history.get_last_message()

        second_task = asyncio.create_task(model.stream())
        await wait_until(lambda: len(transport.started) == 2)
        assert first_message.loading is False
        assert first_message.type == TYPE_REPLY

        transport.release(transport.started[1])
        first, second = await asyncio.gather(first_task, second_task)

        assert transport.cancelled == [first.request_id]
        assert first.content == "first"
        assert first.tool_calls == []
        assert second.content == "second"
        assert [m.content for m in history.list] == ["Hello", "first", "second"]
        assert history.list[1] is first_message
        assert all(not m.loading for m in history.list)
        assert history.get_last_message().type == TYPE_REPLY
        assert model.current_request_id is None

    @pytest.mark.asyncio
    async def test_stop_waits_until_message_is_finalized(self):
        model, transport, history = _model([[": keep-alive"] + text_turn("late")], gated=True)
        events = []
        model.subscribe(events.append)

        task = asyncio.create_task(model.stream())
        await wait_until(lambda: len(transport.started) == 1)
        message = history.get_last_message()

        await model.stop()

        assert message.loading is False
        assert message.type == TYPE_ERROR
        assert message.content == "请求已停止"
        result = await task
        assert result.content == ""
        assert events[-1].type == "done"
        assert len(history.list_without_type()) == 2

    @pytest.mark.asyncio
    async def test_outer_cancel_finalizes_message(self):
        model, _, history = _model([text_turn("partial", " rest")], gated=True)
        events = []
        model.subscribe(events.append)

        task = asyncio.create_task(model.stream())
        await wait_until(lambda: history.get_last_message().content == "partial")
        message = history.get_last_message()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert message.loading is False
        assert message.type == TYPE_ERROR
        assert events[-1].type == "error"
        assert model.current_request_id is None

    @pytest.mark.asyncio
    async def test_unexpected_error_finalizes_message(self):
        model, _, history = _model([RuntimeError("socket exploded")])

        with pytest.raises(RuntimeError):
            await model.stream()

        last = history.get_last_message()
        assert last.loading is False
        assert last.type == TYPE_ERROR
        assert "socket exploded" in last.content


class TestHttpStreamTransport:
    @pytest.mark.asyncio
    async def test_yields_lines_and_sends_headers(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=b'data: {"x": 1}\n\ndata: [DONE]\n')

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        transport = HttpStreamTransport(client=client)
        creds = Credentials(api_key="k", headers={"Authorization": "Bearer k"})

        lines = [line async for line in transport.open_stream("https://x.test/chat", creds, "r1", {"a": 1})]

        assert 'data: {"x": 1}' in lines
        assert "data: [DONE]" in lines
        assert seen == {"auth": "Bearer k", "body": {"a": 1}}
        await client.aclose()

    @pytest.mark.asyncio
    async def test_error_status_raises(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(401, text="bad key")))
        transport = HttpStreamTransport(client=client)

        with pytest.raises(TransportError) as exc_info:
            async for _ in transport.open_stream("https://x.test/chat", Credentials(), "r1", {}):
                pass

        assert exc_info.value.status_code == 401
        assert "bad key" in str(exc_info.value)
        await client.aclose()
