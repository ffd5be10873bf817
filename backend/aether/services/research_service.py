import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Sequence

from openai import APIStatusError

from aether.core.clock import Clock, SystemClock
from aether.core.config import Settings, get_settings
from aether.core.exceptions import ProviderStreamError, ToolArgumentSchemaError
from aether.core.rate_limit import AdmissionController
from aether.models import ResearchSession, ResearchStatus
from aether.services.credentials import CredentialResolver
from aether.services.message_store import MessageStore
from aether.services.model_registry import ModelRegistry
from aether.services.prompts import REPAIR_PROMPT, research_prompt
from aether.services.providers import ProviderAdapter
from aether.services.tools import BaseTool

logger = logging.getLogger(__name__)

SUMMARY_REQUEST = (
    "Stop researching now. Using only what you have found, write a comprehensive summary "
    "of your findings with the sources you relied on."
)


@dataclass
class ResearchOutcome:
    session_id: uuid.UUID
    status: str
    summary: str | None
    actions: list[dict[str, Any]] = field(default_factory=list)


class ResearchRunner:
    """Bounded search/read agent loop that records every action as it happens.

    The research allowance is taken before the session starts and handed back
    if the run fails. Tool arguments that fail validation get one repair call
    against the tool's schema before the call is reported as failed.
    """

    def __init__(
        self,
        store: MessageStore,
        admission: AdmissionController,
        registry: ModelRegistry,
        credentials: CredentialResolver,
        providers: ProviderAdapter,
        tools: Sequence[BaseTool],
        *,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ):
        self.store = store
        self.admission = admission
        self.registry = registry
        self.credentials = credentials
        self.providers = providers
        self.tools = {t.name: t for t in tools}
        self.tool_specs = [t.openai_spec() for t in tools]
        self.clock = clock or SystemClock()
        settings = settings or get_settings()
        self.model_id = settings.research_model_id
        self.repair_model_id = settings.research_repair_model_id
        self.max_steps = settings.research_max_steps
        self.max_actions = settings.research_max_actions

    async def _client(self, user_id: uuid.UUID, model_id: str) -> tuple[Any, str]:
        info = self.registry.resolve(model_id)
        credential = await self.credentials.resolve(user_id, info.provider)
        return self.providers.openai_client(info.provider, credential), info.api_model

    async def start(self, user_id: uuid.UUID, prompt: str, thoughts: str = "") -> ResearchSession:
        """Take one research allowance and open a running session."""
        await self.admission.consume_research(user_id)
        session = await self.store.create_research_session(user_id, prompt, thoughts)
        logger.info("Research session %s started for user %s", session.id, user_id)
        return session

    async def run(self, user_id: uuid.UUID, prompt: str, thoughts: str = "") -> ResearchOutcome:
        session = await self.start(user_id, prompt, thoughts)
        return await self.execute(session)

    async def execute(self, session: ResearchSession) -> ResearchOutcome:
        user_id, prompt = session.user_id, session.prompt
        actions: list[dict[str, Any]] = []
        try:
            client, api_model = await self._client(user_id, self.model_id)
            summary = await self._loop(client, api_model, session.id, user_id, prompt, actions)
            await self.store.update_research_session(
                session.id, status=ResearchStatus.COMPLETED, summary=summary
            )
        except Exception:
            logger.exception("Research session %s failed", session.id)
            await self.store.update_research_session(session.id, status=ResearchStatus.FAILED)
            await self.admission.refund_research(user_id)
            raise
        logger.info("Research session %s completed with %d actions", session.id, len(actions))
        return ResearchOutcome(
            session_id=session.id,
            status=ResearchStatus.COMPLETED.value,
            summary=summary,
            actions=actions,
        )

    async def _create(self, client: Any, **kwargs: Any) -> Any:
        try:
            return await client.chat.completions.create(**kwargs)
        except APIStatusError as e:
            raise ProviderStreamError(f"Research model call failed: {e}", status_code=e.status_code) from e

    async def _loop(
        self,
        client: Any,
        api_model: str,
        session_id: uuid.UUID,
        user_id: uuid.UUID,
        prompt: str,
        actions: list[dict[str, Any]],
    ) -> str:
        messages: list[dict[str, Any]] = [{"role": "user", "content": research_prompt(prompt)}]

        for step in range(self.max_steps):
            if len(actions) >= self.max_actions:
                logger.info("Research session %s reached its action budget", session_id)
                break
            completion = await self._create(
                client,
                model=api_model,
                messages=messages,
                tools=self.tool_specs,
                tool_choice="auto",
            )
            msg = completion.choices[0].message
            tool_calls = getattr(msg, "tool_calls", None) or []
            if not tool_calls:
                content = (msg.content or "").strip()
                if content:
                    return content
                logger.warning("Research session %s step %d returned nothing", session_id, step + 1)
                break

            messages.append(self._message_to_dict(msg))
            for tc in tool_calls:
                if len(actions) >= self.max_actions:
                    result: Any = {"error": "Action budget exhausted", "message": "No more actions are allowed."}
                else:
                    result = await self._run_action(client, session_id, user_id, tc, actions)
                tool = self.tools.get(tc.function.name)
                content = tool.to_model_content(result) if tool else json.dumps(result)
                messages.append({"role": "tool", "tool_call_id": tc.id, "content": content})

        messages.append({"role": "user", "content": SUMMARY_REQUEST})
        completion = await self._create(client, model=api_model, messages=messages)
        return (completion.choices[0].message.content or "").strip()

    def _message_to_dict(self, msg: Any) -> dict[str, Any]:
        assistant_msg: dict[str, Any] = {
            "role": "assistant",
            "tool_calls": [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.function.name, "arguments": tc.function.arguments},
                }
                for tc in msg.tool_calls
            ],
        }
        if msg.content:
            assistant_msg["content"] = msg.content
        return assistant_msg

    async def _run_action(
        self,
        client: Any,
        session_id: uuid.UUID,
        user_id: uuid.UUID,
        tool_call: Any,
        actions: list[dict[str, Any]],
    ) -> Any:
        name = tool_call.function.name
        raw_args = tool_call.function.arguments or "{}"
        tool = self.tools.get(name)
        if tool is None:
            # unknown tools are never repaired
            logger.warning("Research session %s called unknown tool %s", session_id, name)
            return {"error": "Unknown tool", "message": f"Tool {name} is not available"}

        try:
            args = tool.parse_args(raw_args)
        except ToolArgumentSchemaError as e:
            args = await self._repair(client, user_id, tool, raw_args, e)
            if args is None:
                return {"error": "Invalid tool arguments", "message": str(e)}

        action: dict[str, Any] = {
            "type": tool.action_type,
            "tool_call_id": tool_call.id,
            "thoughts": args.thoughts,
            "timestamp": self.clock.now_ms(),
        }
        if tool.action_type == "search":
            action["query"] = args.query
        else:
            action["url"] = args.url
        actions.append(action)
        await self.store.add_research_action(session_id, action)
        return await tool.execute(args)

    async def _repair(
        self,
        client: Any,
        user_id: uuid.UUID,
        tool: BaseTool,
        raw_args: str,
        error: ToolArgumentSchemaError,
    ) -> Any | None:
        logger.info("Repairing arguments for %s: %s", tool.name, error)
        repair_client, repair_model = await self._client(user_id, self.repair_model_id)
        prompt = REPAIR_PROMPT.format(
            tool_name=tool.name,
            arguments=raw_args,
            schema=json.dumps(tool.openai_spec()["function"]["parameters"]),
            error=str(error),
        )
        try:
            completion = await self._create(
                repair_client,
                model=repair_model,
                messages=[{"role": "user", "content": prompt}],
                response_format={"type": "json_object"},
            )
        except ProviderStreamError:
            logger.warning("Argument repair call for %s failed", tool.name, exc_info=True)
            return None
        repaired = completion.choices[0].message.content or ""
        try:
            return tool.parse_args(repaired)
        except ToolArgumentSchemaError:
            logger.warning("Repaired arguments for %s are still invalid", tool.name)
            return None


async def run_research_task(runner: ResearchRunner, session: ResearchSession) -> None:
    """Background entry point for a session opened with ``ResearchRunner.start``."""
    try:
        await runner.execute(session)
    except Exception:
        logger.exception("Research task failed", extra={"session_id": str(session.id)})
        raise
