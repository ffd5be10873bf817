import asyncio
import copy
import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol

from aether.core.clock import Clock, SystemClock
from aether.core.config import Settings, get_settings
from aether.core.exceptions import MissingCredential, ProviderStreamError
from aether.schemas import ToolConfig
from aether.services.credentials import CredentialResolver
from aether.services.model_registry import ModelInfo, ModelRegistry
from aether.services.prompts import DEFAULT_SYSTEM_MESSAGE, get_prompt
from aether.services.providers import (
    GenerationHandle,
    LanguageModel,
    ReasoningDeltaEvent,
    ToolCallEvent,
    ToolResultEvent,
)
from aether.services.tools import ToolContext, ToolKind, ToolRegistry, ToolSet

logger = logging.getLogger(__name__)


class MessageWriter(Protocol):
    async def patch_message(self, message_id: uuid.UUID, **fields: Any) -> bool: ...


class ModelProvider(Protocol):
    def resolve(self, provider: str, model_id: str, credential: str) -> LanguageModel: ...


@dataclass(frozen=True)
class OrchestratorConfig:
    chat_max_steps: int = 10
    research_max_steps: int = 50
    default_system_message: str = DEFAULT_SYSTEM_MESSAGE
    stream_error_notice: str = "\n\n*An error occurred while generating the response.*"
    generic_error_message: str = (
        "I apologize, but I encountered an error while generating a response. Please try again."
    )

    @classmethod
    def from_settings(cls, settings: Settings) -> "OrchestratorConfig":
        return cls(
            chat_max_steps=settings.chat_max_steps,
            research_max_steps=settings.research_max_steps,
        )


@dataclass
class GenerationUser:
    id: uuid.UUID
    preferences: dict[str, Any] = field(default_factory=dict)


@dataclass
class ResolvedModel:
    info: ModelInfo
    model: LanguageModel


@dataclass
class FinalMessageState:
    content: str
    tool_calls: list[dict[str, Any]] | None
    thinking: str | None
    thinking_duration: int | None
    is_complete: bool = True
    # False when the message was cancelled before the final write landed
    persisted: bool = True


@dataclass
class _Accumulator:
    """In-memory state of one generation.

    Field ownership: ``content`` is written only by the text consumer,
    ``tool_calls`` only by the event consumer, and ``thinking`` only by
    whichever consumer carries reasoning. Each consumer awaits its own
    writes in order, so no field's persisted snapshot can move backwards.
    """

    content: str = ""
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    thinking: str = ""
    reasoning_started_at: float | None = None

    def tool_calls_snapshot(self) -> list[dict[str, Any]]:
        return copy.deepcopy(self.tool_calls)


class ResponseOrchestrator:
    """Drives one assistant reply from history to a terminal persisted message."""

    def __init__(
        self,
        store: MessageWriter,
        registry: ModelRegistry,
        credentials: CredentialResolver,
        providers: ModelProvider,
        tools: ToolRegistry,
        *,
        clock: Clock | None = None,
        config: OrchestratorConfig | None = None,
        research_runner: Any | None = None,
    ):
        self.store = store
        self.registry = registry
        self.credentials = credentials
        self.providers = providers
        self.tools = tools
        self.clock = clock or SystemClock()
        self.config = config or OrchestratorConfig.from_settings(get_settings())
        self.research_runner = research_runner

    async def resolve_model(self, model_id: str | None, user_id: uuid.UUID | None) -> ResolvedModel:
        """Look up the model (with fallback) and its provider credential."""
        info = self.registry.resolve(model_id)
        credential = await self.credentials.resolve(user_id, info.provider)
        return ResolvedModel(info=info, model=self.providers.resolve(info.provider, info.api_model, credential))

    async def generate_response(
        self,
        history: list[dict[str, Any]],
        model_id: str | None,
        assistant_message_id: uuid.UUID,
        tool_config: ToolConfig | None,
        user: GenerationUser,
    ) -> FinalMessageState:
        messages = list(history)
        if len(messages) == 1:
            messages.insert(0, {"role": "system", "content": self.config.default_system_message})

        try:
            resolved = await self.resolve_model(model_id, user.id)
            toolset = self.tools.build(
                tool_config or ToolConfig(),
                ToolContext(user_id=user.id, research_runner=self.research_runner),
            )
            system = get_prompt(user.preferences, toolset.active_names)
        except MissingCredential as e:
            logger.warning("Generation for message %s has no credential: %s", assistant_message_id, e)
            await self.store.patch_message(assistant_message_id, content=str(e), is_complete=True)
            raise
        except Exception:
            logger.exception("Generation setup failed for message %s", assistant_message_id)
            await self.store.patch_message(
                assistant_message_id, content=self.config.generic_error_message, is_complete=True
            )
            raise

        max_steps = (
            self.config.research_max_steps if toolset.has(ToolKind.RESEARCH) else self.config.chat_max_steps
        )
        logger.info(
            "Generating message %s with %s/%s tools=%s max_steps=%d",
            assistant_message_id, resolved.info.provider, resolved.info.id, toolset.active_names, max_steps,
        )
        return await self._stream(resolved, system, messages, toolset, max_steps, assistant_message_id)

    async def _stream(
        self,
        resolved: ResolvedModel,
        system: str,
        messages: list[dict[str, Any]],
        toolset: ToolSet,
        max_steps: int,
        message_id: uuid.UUID,
    ) -> FinalMessageState:
        state = _Accumulator()
        handle: GenerationHandle | None = None
        tasks: list[asyncio.Task] = []
        try:
            handle = resolved.model.stream(system, messages, toolset.tools, max_steps)
            reasoning = handle.reasoning_stream()
            tasks = [
                asyncio.create_task(self._consume_text(handle.text_stream(), state, message_id)),
                asyncio.create_task(
                    self._consume_events(
                        handle.full_stream(), state, message_id, owns_thinking=reasoning is None
                    )
                ),
            ]
            if reasoning is not None:
                tasks.append(asyncio.create_task(self._consume_reasoning(reasoning, state, message_id)))
            # every stream ends on the same marker, so all consumers finish their writes
            results = await asyncio.gather(*tasks, return_exceptions=True)
            errors = [r for r in results if isinstance(r, Exception)]
            if errors:
                raise errors[0]
        except Exception as e:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if handle is not None:
                await handle.aclose()
            logger.exception("Streaming failed for message %s", message_id)
            await self.store.patch_message(
                message_id,
                content=state.content + self.config.stream_error_notice,
                tool_calls=state.tool_calls_snapshot() or None,
                thinking=state.thinking or None,
                is_complete=True,
            )
            if isinstance(e, ProviderStreamError):
                raise
            raise ProviderStreamError(f"Generation failed: {e}") from e

        final = FinalMessageState(
            content=state.content,
            tool_calls=state.tool_calls_snapshot() or None,
            thinking=state.thinking or None,
            thinking_duration=self._thinking_duration(state),
        )
        final.persisted = await self.store.patch_message(
            message_id,
            content=final.content,
            tool_calls=final.tool_calls,
            thinking=final.thinking,
            thinking_duration=final.thinking_duration,
            is_complete=True,
        )
        if not final.persisted:
            logger.info("Message %s was cancelled before completion; final write skipped", message_id)
        return final

    def _thinking_duration(self, state: _Accumulator) -> int | None:
        if state.reasoning_started_at is None:
            return None
        return math.ceil(self.clock.monotonic() - state.reasoning_started_at)

    async def _consume_text(self, stream: AsyncIterator[str], state: _Accumulator, message_id: uuid.UUID) -> None:
        async for delta in stream:
            state.content += delta
            await self.store.patch_message(message_id, content=state.content)

    async def _append_thinking(self, state: _Accumulator, delta: str, message_id: uuid.UUID) -> None:
        if state.reasoning_started_at is None:
            state.reasoning_started_at = self.clock.monotonic()
        state.thinking += delta
        await self.store.patch_message(message_id, thinking=state.thinking)

    async def _consume_reasoning(self, stream: AsyncIterator[str], state: _Accumulator, message_id: uuid.UUID) -> None:
        async for delta in stream:
            await self._append_thinking(state, delta, message_id)

    async def _consume_events(
        self,
        stream: AsyncIterator[Any],
        state: _Accumulator,
        message_id: uuid.UUID,
        *,
        owns_thinking: bool,
    ) -> None:
        async for event in stream:
            if isinstance(event, ToolCallEvent):
                state.tool_calls.append({
                    "tool_call_id": event.tool_call_id,
                    "tool_name": event.tool_name,
                    "args": event.args,
                    "result": None,
                })
                await self.store.patch_message(message_id, tool_calls=state.tool_calls_snapshot())
            elif isinstance(event, ToolResultEvent):
                record = next(
                    (tc for tc in state.tool_calls if tc["tool_call_id"] == event.tool_call_id), None
                )
                if record is None:
                    logger.debug("Dropping result for unknown tool call %s", event.tool_call_id)
                    continue
                record["result"] = event.result
                await self.store.patch_message(message_id, tool_calls=state.tool_calls_snapshot())
            elif isinstance(event, ReasoningDeltaEvent):
                if owns_thinking:
                    await self._append_thinking(state, event.text, message_id)
            else:
                logger.debug("Ignoring stream event %r", event)
