import asyncio
import json
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Sequence

from aether.core.exceptions import ProviderStreamError
from aether.services.providers import (
    GenerationHandle,
    ToolCallEvent,
    ToolResultEvent,
)


class FakeClock:
    def __init__(self, now_ms: int = 1_700_000_000_000, monotonic: float = 100.0) -> None:
        self._now_ms = now_ms
        self._monotonic = monotonic

    def now_ms(self) -> int:
        return self._now_ms

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        self._now_ms += int(seconds * 1000)
        self._monotonic += seconds


class FakeModel:
    """Scripted language model.

    ``script`` is a list of steps replayed by the producer task:
    ``("text", delta)``, ``("reasoning", delta)``, ``("tool_call", id, name, args)``,
    ``("tool_result", id, name, result)``, ``("sleep", seconds)``, ``("error", exc)``.
    ``("invoke", id, name, args)`` runs the matching tool from the tool list and
    emits both the call and its result.
    """

    def __init__(
        self,
        script: Optional[List[tuple]] = None,
        *,
        completions: Optional[List[Any]] = None,
        reasoning_side_channel: bool = False,
        clock: Optional[FakeClock] = None,
        provider: str = "gemini",
        api_model: str = "gemini-2.5-flash",
    ) -> None:
        self.script = list(script or [])
        self.completions = list(completions or [])
        self.reasoning_side_channel = reasoning_side_channel
        self.clock = clock
        self.provider = provider
        self.api_model = api_model
        self.stream_calls: List[Dict[str, Any]] = []
        self.complete_calls: List[Dict[str, Any]] = []

    def stream(
        self,
        system: str,
        messages: List[Dict[str, Any]],
        tools: Sequence[Any] = (),
        max_steps: int = 10,
    ) -> GenerationHandle:
        self.stream_calls.append(
            {"system": system, "messages": list(messages), "tools": list(tools), "max_steps": max_steps}
        )
        tools_by_name = {t.name: t for t in tools}

        async def producer(handle: GenerationHandle) -> None:
            for step in self.script:
                kind = step[0]
                if kind == "text":
                    handle.emit_text(step[1])
                elif kind == "reasoning":
                    handle.emit_reasoning(step[1])
                elif kind == "tool_call":
                    handle.emit_event(ToolCallEvent(step[1], step[2], step[3]))
                elif kind == "tool_result":
                    handle.emit_event(ToolResultEvent(step[1], step[2], step[3]))
                elif kind == "invoke":
                    handle.emit_event(ToolCallEvent(step[1], step[2], step[3]))
                    result = await tools_by_name[step[2]].invoke(json.dumps(step[3]))
                    handle.emit_event(ToolResultEvent(step[1], step[2], result))
                elif kind == "sleep":
                    if self.clock is not None:
                        self.clock.advance(step[1])
                    await asyncio.sleep(0)
                elif kind == "error":
                    raise step[1]
                await asyncio.sleep(0)

        return GenerationHandle(producer, reasoning_side_channel=self.reasoning_side_channel)

    async def complete(self, system: Optional[str], messages: List[Dict[str, Any]]) -> str:
        self.complete_calls.append({"system": system, "messages": list(messages)})
        if not self.completions:
            raise ProviderStreamError("no scripted completion")
        item = self.completions.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class FakeProviderAdapter:
    """Stands in for ProviderAdapter. Every provider resolves to ``model``."""

    def __init__(self, model: Optional[FakeModel] = None, openai_client: Any = None) -> None:
        self.model = model or FakeModel([("text", "Hello")])
        self.openai = openai_client or FakeOpenAIClient()
        self.resolved: List[tuple] = []
        self.clients: List[tuple] = []

    def resolve(self, provider: str, model_id: str, credential: str) -> FakeModel:
        self.resolved.append((provider, model_id, credential))
        return self.model

    def openai_client(self, provider: str, credential: str) -> "FakeOpenAIClient":
        self.clients.append((provider, credential))
        return self.openai


def tool_call(call_id: str, name: str, arguments: Any) -> SimpleNamespace:
    if not isinstance(arguments, str):
        arguments = json.dumps(arguments)
    return SimpleNamespace(id=call_id, type="function", function=SimpleNamespace(name=name, arguments=arguments))


def completion(content: Optional[str] = None, tool_calls: Optional[List[SimpleNamespace]] = None) -> SimpleNamespace:
    message = SimpleNamespace(role="assistant", content=content, tool_calls=tool_calls or None)
    return SimpleNamespace(choices=[SimpleNamespace(message=message, finish_reason="stop")])


class _FakeCompletions:
    def __init__(self, owner: "FakeOpenAIClient") -> None:
        self.owner = owner

    async def create(self, **kwargs: Any) -> Any:
        self.owner.calls.append(kwargs)
        if not self.owner.responses:
            raise AssertionError("unexpected chat.completions.create call")
        item = self.owner.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class _FakeImages:
    def __init__(self, owner: "FakeOpenAIClient") -> None:
        self.owner = owner

    async def generate(self, **kwargs: Any) -> Any:
        self.owner.image_calls.append(kwargs)
        if self.owner.image_error is not None:
            raise self.owner.image_error
        return SimpleNamespace(data=[SimpleNamespace(b64_json="aW1hZ2U=")])


class FakeOpenAIClient:
    """Just enough of AsyncOpenAI for research and image generation."""

    def __init__(self, responses: Optional[List[Any]] = None, image_error: Optional[Exception] = None) -> None:
        self.responses = list(responses or [])
        self.calls: List[Dict[str, Any]] = []
        self.image_calls: List[Dict[str, Any]] = []
        self.image_error = image_error
        self.chat = SimpleNamespace(completions=_FakeCompletions(self))
        self.images = _FakeImages(self)


class FakeTavilyClient:
    def __init__(self, results: Optional[List[Dict[str, Any]]] = None, error: Optional[Exception] = None) -> None:
        self.results = results if results is not None else [
            {
                "title": "Example result",
                "url": "https://example.com/a",
                "content": "Example   content\nabout things",
                "score": 0.9,
                "published_date": "2026-01-01",
            }
        ]
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def search(self, query: str, **kwargs: Any) -> Dict[str, Any]:
        self.calls.append({"query": query, **kwargs})
        if self.error is not None:
            raise self.error
        return {"results": self.results}
