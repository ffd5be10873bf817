import json
from typing import Any

import httpx
import pytest
import respx
from pydantic import BaseModel

from aether.core.exceptions import ProviderStreamError, UnsupportedProvider
from aether.services.providers import (
    OpenAICompatibleModel,
    ProviderAdapter,
    ReasoningDeltaEvent,
    ThinkTagSplitter,
    ToolCallEvent,
    ToolResultEvent,
)
from aether.services.tools import BaseTool

BASE_URL = "http://provider.test/v1"
URL = f"{BASE_URL}/chat/completions"


def sse(*chunks: Any) -> str:
    lines = [f"data: {json.dumps(chunk)}\n\n" for chunk in chunks]
    lines.append("data: [DONE]\n\n")
    return "".join(lines)


def delta(**fields: Any) -> dict:
    return {"choices": [{"index": 0, "delta": fields, "finish_reason": None}]}


class EchoInput(BaseModel):
    text: str


class EchoTool(BaseTool):
    name = "echo"
    description = "Echo the text back"
    input_model = EchoInput

    def __init__(self) -> None:
        self.seen: list[str] = []

    async def run(self, args: EchoInput) -> dict:
        self.seen.append(args.text)
        return {"echo": args.text}


def make_model(**kwargs: Any) -> OpenAICompatibleModel:
    return OpenAICompatibleModel("openai", "test-model", "sk-test", BASE_URL, timeout=5.0, **kwargs)


async def collect(handle):
    text = [t async for t in handle.text_stream()]
    events = [e async for e in handle.full_stream()]
    return "".join(text), events


def test_think_splitter_handles_tags_split_across_deltas():
    splitter = ThinkTagSplitter()
    parts = []
    for piece in ["Hello <th", "ink>secret", " plan</thi", "nk> world", " <"]:
        parts.extend(splitter.feed(piece))
    parts.extend(splitter.flush())

    reasoning = "".join(text for is_reasoning, text in parts if is_reasoning)
    visible = "".join(text for is_reasoning, text in parts if not is_reasoning)
    assert reasoning == "secret plan"
    assert visible == "Hello  world <"


@pytest.mark.asyncio
@respx.mock
async def test_streams_text_and_reasoning_deltas():
    route = respx.post(URL).mock(return_value=httpx.Response(200, text=sse(
        delta(reasoning_content="Considering"),
        delta(content="Hi"),
        delta(content=" <think>inline</think>there"),
    )))

    handle = make_model().stream("system prompt", [{"role": "user", "content": "Hello"}])
    text, events = await collect(handle)

    assert text == "Hi there"
    assert [e.text for e in events if isinstance(e, ReasoningDeltaEvent)] == ["Considering", "inline"]
    payload = json.loads(route.calls[0].request.content)
    assert payload["stream"] is True
    assert payload["messages"][0] == {"role": "system", "content": "system prompt"}
    assert route.calls[0].request.headers["Authorization"] == "Bearer sk-test"


@pytest.mark.asyncio
@respx.mock
async def test_reasoning_side_channel_keeps_events_clean():
    respx.post(URL).mock(return_value=httpx.Response(200, text=sse(
        delta(reasoning="thinking"),
        delta(content="done"),
    )))

    handle = make_model(reasoning_side_channel=True).stream("s", [{"role": "user", "content": "q"}])
    reasoning = [r async for r in handle.reasoning_stream()]
    text, events = await collect(handle)

    assert reasoning == ["thinking"]
    assert text == "done"
    assert events == []


@pytest.mark.asyncio
@respx.mock
async def test_tool_loop_runs_tool_and_continues():
    tool_round = sse(
        delta(tool_calls=[{"index": 0, "id": "call_1", "function": {"name": "echo", "arguments": '{"te'}}]),
        delta(tool_calls=[{"index": 0, "function": {"arguments": 'xt": "ping"}'}}]),
    )
    route = respx.post(URL).mock(side_effect=[
        httpx.Response(200, text=tool_round),
        httpx.Response(200, text=sse(delta(content="pong"))),
    ])
    tool = EchoTool()

    handle = make_model().stream("s", [{"role": "user", "content": "q"}], tools=[tool], max_steps=3)
    text, events = await collect(handle)

    assert text == "pong"
    assert tool.seen == ["ping"]
    assert events == [
        ToolCallEvent("call_1", "echo", {"text": "ping"}),
        ToolResultEvent("call_1", "echo", {"echo": "ping"}),
    ]
    second = json.loads(route.calls[1].request.content)
    assert second["messages"][-2]["tool_calls"][0]["id"] == "call_1"
    assert second["messages"][-1] == {"role": "tool", "tool_call_id": "call_1", "content": '{"echo": "ping"}'}
    assert second["tools"][0]["function"]["name"] == "echo"


@pytest.mark.asyncio
@respx.mock
async def test_invalid_tool_arguments_become_error_result():
    respx.post(URL).mock(side_effect=[
        httpx.Response(200, text=sse(
            delta(tool_calls=[{"index": 0, "id": "call_1", "function": {"name": "echo", "arguments": "{}"}}]),
        )),
        httpx.Response(200, text=sse(delta(content="sorry"))),
    ])
    tool = EchoTool()

    handle = make_model().stream("s", [{"role": "user", "content": "q"}], tools=[tool])
    _, events = await collect(handle)

    result = next(e for e in events if isinstance(e, ToolResultEvent)).result
    assert result["error"] == "Invalid tool arguments"
    assert tool.seen == []


@pytest.mark.asyncio
@respx.mock
async def test_stops_at_step_limit():
    looping = sse(delta(tool_calls=[{"index": 0, "id": "c", "function": {"name": "echo", "arguments": '{"text": "x"}'}}]))
    route = respx.post(URL).mock(side_effect=lambda request: httpx.Response(200, text=looping))

    handle = make_model().stream("s", [{"role": "user", "content": "q"}], tools=[EchoTool()], max_steps=2)
    await collect(handle)

    assert route.call_count == 2


@pytest.mark.asyncio
@respx.mock
async def test_http_error_fails_both_streams():
    respx.post(URL).mock(return_value=httpx.Response(503, text="model is overloaded"))

    handle = make_model().stream("s", [{"role": "user", "content": "q"}])
    with pytest.raises(ProviderStreamError) as exc_info:
        [t async for t in handle.text_stream()]
    with pytest.raises(ProviderStreamError):
        [e async for e in handle.full_stream()]

    assert exc_info.value.status_code == 503
    assert exc_info.value.is_overloaded is True


@pytest.mark.asyncio
@respx.mock
async def test_error_chunk_raises():
    respx.post(URL).mock(return_value=httpx.Response(200, text=sse(
        delta(content="part"),
        {"error": {"message": "quota exhausted"}},
    )))

    handle = make_model().stream("s", [{"role": "user", "content": "q"}])
    received = []
    with pytest.raises(ProviderStreamError, match="quota exhausted"):
        async for t in handle.text_stream():
            received.append(t)
    assert received == ["part"]


@pytest.mark.asyncio
@respx.mock
async def test_complete_strips_thinking():
    route = respx.post(URL).mock(return_value=httpx.Response(200, json={
        "choices": [{"message": {"role": "assistant", "content": "<think>hmm</think>Trip Planning"}}],
    }))

    title = await make_model().complete(None, [{"role": "user", "content": "name this"}])

    assert title == "Trip Planning"
    assert json.loads(route.calls[0].request.content)["stream"] is False


@pytest.mark.asyncio
@respx.mock
async def test_complete_maps_rate_limit():
    respx.post(URL).mock(return_value=httpx.Response(429, json={"error": "slow down"}))

    with pytest.raises(ProviderStreamError) as exc_info:
        await make_model().complete("s", [{"role": "user", "content": "q"}])
    assert exc_info.value.is_overloaded is True


def test_adapter_rejects_unknown_provider(settings):
    adapter = ProviderAdapter(settings)
    with pytest.raises(UnsupportedProvider):
        adapter.resolve("nope", "m", "key")
    model = adapter.resolve("groq", "openai/gpt-oss-120b", "gsk")
    assert model.base_url == "https://api.groq.com/openai/v1"
    assert model.api_model == "openai/gpt-oss-120b"
