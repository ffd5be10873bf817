import asyncio
import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol, Sequence, Union

import httpx
from openai import AsyncOpenAI

from aether.core.config import Settings, get_settings
from aether.core.exceptions import ProviderStreamError, UnsupportedProvider

logger = logging.getLogger(__name__)

PROVIDER_BASE_URLS: dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "groq": "https://api.groq.com/openai/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "moonshot": "https://api.moonshot.ai/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta/openai",
}


@dataclass
class ToolCallEvent:
    tool_call_id: str
    tool_name: str
    args: dict[str, Any]


@dataclass
class ToolResultEvent:
    tool_call_id: str
    tool_name: str
    result: Any


@dataclass
class ReasoningDeltaEvent:
    text: str


StreamEvent = Union[ToolCallEvent, ToolResultEvent, ReasoningDeltaEvent]


class ExecutableTool(Protocol):
    name: str

    def openai_spec(self) -> dict[str, Any]: ...

    async def invoke(self, raw_args: Any) -> Any: ...

    def to_model_content(self, result: Any) -> str: ...


_END = object()


@dataclass
class _Failure:
    error: BaseException


class GenerationHandle:
    """Text deltas and structured events from one generation.

    A single producer task feeds one queue per stream. Both streams are
    finite and end together: on success each receives an end marker, on
    failure each receives the same error, raised to whoever iterates it.
    Reasoning goes to the event stream unless a side channel was requested.
    """

    def __init__(
        self,
        producer: Callable[["GenerationHandle"], Awaitable[None]],
        *,
        reasoning_side_channel: bool = False,
    ):
        self._text: asyncio.Queue = asyncio.Queue()
        self._events: asyncio.Queue = asyncio.Queue()
        self._reasoning: asyncio.Queue | None = asyncio.Queue() if reasoning_side_channel else None
        self._task = asyncio.create_task(self._run(producer))

    # producer side

    def emit_text(self, delta: str) -> None:
        if delta:
            self._text.put_nowait(delta)

    def emit_event(self, event: StreamEvent) -> None:
        self._events.put_nowait(event)

    def emit_reasoning(self, delta: str) -> None:
        if not delta:
            return
        if self._reasoning is not None:
            self._reasoning.put_nowait(delta)
        else:
            self._events.put_nowait(ReasoningDeltaEvent(delta))

    def _queues(self) -> list[asyncio.Queue]:
        queues = [self._text, self._events]
        if self._reasoning is not None:
            queues.append(self._reasoning)
        return queues

    async def _run(self, producer: Callable[["GenerationHandle"], Awaitable[None]]) -> None:
        try:
            await producer(self)
        except asyncio.CancelledError:
            for queue in self._queues():
                queue.put_nowait(_Failure(ProviderStreamError("Generation was cancelled")))
            raise
        except ProviderStreamError as exc:
            for queue in self._queues():
                queue.put_nowait(_Failure(exc))
        except Exception as exc:
            logger.warning("Provider stream failed: %s", exc, exc_info=True)
            error = ProviderStreamError(f"Provider stream failed: {exc}")
            error.__cause__ = exc
            for queue in self._queues():
                queue.put_nowait(_Failure(error))
        else:
            for queue in self._queues():
                queue.put_nowait(_END)

    # consumer side

    @staticmethod
    async def _drain(queue: asyncio.Queue) -> AsyncIterator[Any]:
        while True:
            item = await queue.get()
            if item is _END:
                return
            if isinstance(item, _Failure):
                raise item.error
            yield item

    def text_stream(self) -> AsyncIterator[str]:
        return self._drain(self._text)

    def full_stream(self) -> AsyncIterator[StreamEvent]:
        return self._drain(self._events)

    def reasoning_stream(self) -> AsyncIterator[str] | None:
        if self._reasoning is None:
            return None
        return self._drain(self._reasoning)

    async def aclose(self) -> None:
        if self._task.done():
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class LanguageModel(Protocol):
    provider: str
    api_model: str

    def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: Sequence[ExecutableTool] = (),
        max_steps: int = 10,
    ) -> GenerationHandle: ...

    async def complete(self, system: str | None, messages: list[dict[str, Any]]) -> str: ...


class ThinkTagSplitter:
    """Route inline <think>...</think> spans of streamed content to reasoning.

    Tags may be split across deltas, so a possible partial tag at the end of
    a delta is held back until the next one arrives.
    """

    OPEN = "<think>"
    CLOSE = "</think>"

    def __init__(self) -> None:
        self._buffer = ""
        self._inside = False

    @staticmethod
    def _partial_suffix(text: str, tag: str) -> int:
        for size in range(min(len(tag) - 1, len(text)), 0, -1):
            if text.endswith(tag[:size]):
                return size
        return 0

    def feed(self, text: str) -> list[tuple[bool, str]]:
        """Return (is_reasoning, text) parts that are safe to emit."""
        self._buffer += text
        parts: list[tuple[bool, str]] = []
        while self._buffer:
            tag = self.CLOSE if self._inside else self.OPEN
            idx = self._buffer.find(tag)
            if idx >= 0:
                if idx:
                    parts.append((self._inside, self._buffer[:idx]))
                self._buffer = self._buffer[idx + len(tag):]
                self._inside = not self._inside
                continue
            keep = self._partial_suffix(self._buffer, tag)
            cut = len(self._buffer) - keep
            if cut:
                parts.append((self._inside, self._buffer[:cut]))
            self._buffer = self._buffer[cut:]
            break
        return parts

    def flush(self) -> list[tuple[bool, str]]:
        if not self._buffer:
            return []
        parts = [(self._inside, self._buffer)]
        self._buffer = ""
        return parts


def _strip_thinking(text: str) -> str:
    """Remove provider reasoning blocks from a non-streamed reply."""
    if not text:
        return ""
    cleaned = re.sub(r"<think[^>]*>[\s\S]*?</think>", "", text, flags=re.I)
    cleaned = re.sub(r"<thinking[^>]*>[\s\S]*?</thinking>", "", cleaned, flags=re.I)
    return cleaned.strip()


def _new_tool_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


@dataclass
class _PendingToolCall:
    id: str | None = None
    name: str = ""
    arguments: str = ""

    def parsed_args(self) -> dict[str, Any]:
        if not self.arguments.strip():
            return {}
        try:
            parsed = json.loads(self.arguments)
        except json.JSONDecodeError:
            return {"_raw": self.arguments}
        return parsed if isinstance(parsed, dict) else {"_raw": parsed}


@dataclass
class _RoundResult:
    text: str = ""
    tool_calls: list[_PendingToolCall] = field(default_factory=list)
    finish_reason: str | None = None


class OpenAICompatibleModel:
    """Chat-completions model reached over an OpenAI-compatible HTTP API."""

    def __init__(
        self,
        provider: str,
        api_model: str,
        api_key: str,
        base_url: str,
        *,
        timeout: float = 300.0,
        temperature: float | None = None,
        reasoning_side_channel: bool = False,
    ):
        self.provider = provider
        self.api_model = api_model
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.temperature = temperature
        self.reasoning_side_channel = reasoning_side_channel

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _payload(self, messages: list[dict[str, Any]], tool_specs: list[dict[str, Any]], *, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.api_model,
            "messages": messages,
            "stream": stream,
        }
        if self.temperature is not None:
            payload["temperature"] = self.temperature
        if tool_specs:
            payload["tools"] = tool_specs
            payload["tool_choice"] = "auto"
        return payload

    def _http_error(self, exc: httpx.HTTPStatusError, body: str) -> ProviderStreamError:
        status_code = exc.response.status_code
        logger.warning("%s request failed: HTTP %s %s", self.provider, status_code, body[:300])
        message = f"{self.provider} request failed (HTTP {status_code})"
        if body.strip():
            message = f"{message}: {body.strip()[:300]}"
        error = ProviderStreamError(message, status_code=status_code)
        error.__cause__ = exc
        return error

    def stream(
        self,
        system: str,
        messages: list[dict[str, Any]],
        tools: Sequence[ExecutableTool] = (),
        max_steps: int = 10,
    ) -> GenerationHandle:
        async def producer(handle: GenerationHandle) -> None:
            await self._run_steps(handle, system, messages, tools, max_steps)

        return GenerationHandle(producer, reasoning_side_channel=self.reasoning_side_channel)

    async def _run_steps(
        self,
        handle: GenerationHandle,
        system: str,
        messages: list[dict[str, Any]],
        tools: Sequence[ExecutableTool],
        max_steps: int,
    ) -> None:
        conversation: list[dict[str, Any]] = [{"role": "system", "content": system}, *messages]
        tools_by_name = {t.name: t for t in tools}
        tool_specs = [t.openai_spec() for t in tools]

        for step in range(max_steps):
            logger.debug("%s step %d/%d, messages=%d", self.provider, step + 1, max_steps, len(conversation))
            round_result = await self._stream_round(handle, conversation, tool_specs)
            if not round_result.tool_calls:
                return

            assistant_msg: dict[str, Any] = {
                "role": "assistant",
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": call.arguments or "{}"},
                    }
                    for call in round_result.tool_calls
                ],
            }
            if round_result.text:
                assistant_msg["content"] = round_result.text
            conversation.append(assistant_msg)
            conversation.extend(await self._run_tools(handle, round_result.tool_calls, tools_by_name))

        logger.info("%s stopped after reaching the %d step limit", self.provider, max_steps)

    async def _stream_round(
        self,
        handle: GenerationHandle,
        conversation: list[dict[str, Any]],
        tool_specs: list[dict[str, Any]],
    ) -> _RoundResult:
        url = f"{self.base_url}/chat/completions"
        payload = self._payload(conversation, tool_specs, stream=True)
        result = _RoundResult()
        text_parts: list[str] = []
        tool_calls_by_index: dict[int, _PendingToolCall] = {}
        splitter = ThinkTagSplitter()

        def route(parts: list[tuple[bool, str]]) -> None:
            for is_reasoning, text in parts:
                if is_reasoning:
                    handle.emit_reasoning(text)
                else:
                    text_parts.append(text)
                    handle.emit_text(text)

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                async with client.stream("POST", url, headers=self._headers, json=payload) as resp:
                    if resp.is_error:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        try:
                            resp.raise_for_status()
                        except httpx.HTTPStatusError as exc:
                            raise self._http_error(exc, body) from exc

                    async for line in resp.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data_str = line[5:].strip()
                        if data_str == "[DONE]":
                            break
                        try:
                            chunk = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue
                        if chunk.get("error"):
                            message = chunk["error"].get("message") if isinstance(chunk["error"], dict) else chunk["error"]
                            raise ProviderStreamError(f"{self.provider} stream error: {message}")

                        choices = chunk.get("choices") or []
                        if not choices:
                            continue
                        delta = choices[0].get("delta") or {}
                        if choices[0].get("finish_reason"):
                            result.finish_reason = choices[0]["finish_reason"]

                        reasoning = delta.get("reasoning_content") or delta.get("reasoning")
                        if isinstance(reasoning, str) and reasoning:
                            handle.emit_reasoning(reasoning)

                        token = delta.get("content")
                        if token:
                            route(splitter.feed(token))

                        for tc in delta.get("tool_calls") or []:
                            idx = tc.get("index", 0)
                            entry = tool_calls_by_index.setdefault(idx, _PendingToolCall())
                            if tc.get("id"):
                                entry.id = tc["id"]
                            fn = tc.get("function") or {}
                            if fn.get("name"):
                                entry.name = fn["name"]
                            if fn.get("arguments"):
                                entry.arguments += fn["arguments"]
        except httpx.RequestError as exc:
            logger.warning("%s connection failed: %s", self.provider, exc)
            raise ProviderStreamError(f"{self.provider} connection failed: {exc}") from exc

        route(splitter.flush())
        result.text = "".join(text_parts)
        for idx in sorted(tool_calls_by_index):
            call = tool_calls_by_index[idx]
            if not call.name:
                continue
            call.id = call.id or _new_tool_call_id()
            result.tool_calls.append(call)
        return result

    async def _run_tools(
        self,
        handle: GenerationHandle,
        calls: list[_PendingToolCall],
        tools_by_name: dict[str, ExecutableTool],
    ) -> list[dict[str, Any]]:
        for call in calls:
            handle.emit_event(ToolCallEvent(call.id, call.name, call.parsed_args()))

        async def run_one(call: _PendingToolCall) -> dict[str, Any]:
            tool = tools_by_name.get(call.name)
            if tool is None:
                result: Any = {"error": "Unknown tool", "message": f"Tool {call.name} is not available"}
                content = json.dumps(result)
            else:
                result = await tool.invoke(call.arguments or "{}")
                content = tool.to_model_content(result)
            handle.emit_event(ToolResultEvent(call.id, call.name, result))
            return {"role": "tool", "tool_call_id": call.id, "content": content}

        return list(await asyncio.gather(*(run_one(call) for call in calls)))

    async def complete(self, system: str | None, messages: list[dict[str, Any]]) -> str:
        """Single non-streamed completion with reasoning blocks removed."""
        conversation = ([{"role": "system", "content": system}] if system else []) + list(messages)
        url = f"{self.base_url}/chat/completions"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(url, headers=self._headers, json=self._payload(conversation, [], stream=False))
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise self._http_error(exc, exc.response.text) from exc
        except httpx.RequestError as exc:
            raise ProviderStreamError(f"{self.provider} connection failed: {exc}") from exc

        choices = data.get("choices") or []
        if not choices:
            return ""
        content = (choices[0].get("message") or {}).get("content") or ""
        if isinstance(content, list):
            content = "".join(str(part.get("text", "")) for part in content if isinstance(part, dict))
        return _strip_thinking(content)


class ProviderAdapter:
    """Builds models and SDK clients for a provider name plus credential."""

    def __init__(self, settings: Settings | None = None, base_urls: dict[str, str] | None = None):
        self.settings = settings or get_settings()
        self.base_urls = dict(base_urls or PROVIDER_BASE_URLS)

    def base_url(self, provider: str) -> str:
        try:
            return self.base_urls[provider]
        except KeyError:
            raise UnsupportedProvider(provider) from None

    def resolve(self, provider: str, model_id: str, credential: str) -> LanguageModel:
        return OpenAICompatibleModel(
            provider,
            model_id,
            credential,
            self.base_url(provider),
            timeout=self.settings.provider_timeout_seconds,
        )

    def openai_client(self, provider: str, credential: str) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=credential,
            base_url=self.base_url(provider),
            timeout=self.settings.provider_timeout_seconds,
            max_retries=self.settings.provider_max_retries,
        )
