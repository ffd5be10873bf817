import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from aether.core.config import Settings, get_settings
from aether.core.exceptions import (
    InvalidOperation,
    MessageNotFound,
    ProviderStreamError,
)
from aether.core.rate_limit import AdmissionController, AdmissionResult
from aether.models import Chat, Message, MessageRole, User, UserRole
from aether.schemas import Attachment, ToolConfig
from aether.services.message_store import DEFAULT_CHAT_TITLE, MessageStore
from aether.services.orchestrator import FinalMessageState, GenerationUser, ResponseOrchestrator
from aether.services.prompts import title_prompt

logger = logging.getLogger(__name__)

_MARKDOWN_CHARS = re.compile(r"[#*_`>\[\]()~|]")


@dataclass
class GenerationJob:
    chat_id: uuid.UUID
    assistant_message_id: uuid.UUID
    model_id: str
    tool_config: ToolConfig
    history: list[dict[str, Any]]
    user: GenerationUser
    user_message_id: uuid.UUID | None = None
    remaining: int | None = None
    # first user message of a fresh chat, when this job owns title generation
    title_source: str | None = None


def heuristic_title(message: str) -> str:
    """First six words of the message without markdown, capitalised."""
    words = _MARKDOWN_CHARS.sub("", message or "").split()[:6]
    if not words:
        return DEFAULT_CHAT_TITLE
    title = " ".join(words)
    return title[0].upper() + title[1:]


def clean_title(raw: str) -> str:
    lines = [ln.strip() for ln in (raw or "").splitlines() if ln.strip()]
    if not lines:
        return ""
    title = _MARKDOWN_CHARS.sub("", lines[0]).strip()
    if title.lower().startswith("title:"):
        title = title[6:].strip()
    title = title.strip("\"'“”‘’").strip()
    return title[:80]


def to_provider_message(message: Message) -> dict[str, Any]:
    """Convert a stored message into a chat-completions message."""
    attachments = message.attachments or []
    if message.role != MessageRole.USER.value or not attachments:
        return {"role": message.role, "content": message.content}

    parts: list[dict[str, Any]] = [{"type": "text", "text": message.content}]
    for att in attachments:
        if str(att.get("type", "")).startswith("image/"):
            parts.append({"type": "image_url", "image_url": {"url": att.get("url")}})
        else:
            parts.append({
                "type": "text",
                "text": f"[Attached file: {att.get('name')} ({att.get('type')}) {att.get('url')}]",
            })
    return {"role": message.role, "content": parts}


class ChatService:
    def __init__(
        self,
        store: MessageStore,
        admission: AdmissionController,
        orchestrator: ResponseOrchestrator,
        settings: Settings | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.admission = admission
        self.orchestrator = orchestrator
        self.settings = settings or get_settings()
        self._sleep = sleep

    @staticmethod
    def subject_key(user: User) -> str | None:
        if user.role == UserRole.GUEST.value:
            return user.anon_key
        return str(user.id)

    @staticmethod
    def _generation_user(user: User) -> GenerationUser:
        return GenerationUser(id=user.id, preferences=dict(user.preferences or {}))

    async def _history(self, chat_id: uuid.UUID) -> list[dict[str, Any]]:
        messages = await self.store.get_messages_for_chat(chat_id, complete_only=True)
        return [to_provider_message(m) for m in messages]

    async def _admit(self, user: User, model_id: str) -> AdmissionResult:
        # model and credential problems surface before the quota is touched
        await self.orchestrator.resolve_model(model_id, user.id)
        return await self.admission.check_and_consume(self.subject_key(user), user.role)

    async def _owned_message(self, user: User, message_id: uuid.UUID) -> tuple[Message, Chat]:
        message = await self.store.require_message(message_id)
        chat = await self.store.require_chat(message.chat_id, user.id)
        return message, chat

    # chats

    async def create_chat(self, user: User, title: str | None = None) -> Chat:
        return await self.store.create_chat(user.id, title)

    async def get_chat(self, user: User, chat_id: uuid.UUID) -> Chat:
        return await self.store.require_chat(chat_id, user.id)

    async def search_chats(self, user: User, search: str | None = None) -> list[Chat]:
        return await self.store.list_chats(user.id, search)

    async def list_messages(self, user: User, chat_id: uuid.UUID) -> list[Message]:
        await self.store.require_chat(chat_id, user.id)
        return await self.store.get_messages_for_chat(chat_id)

    async def rename_chat(self, user: User, chat_id: uuid.UUID, title: str) -> Chat:
        await self.store.require_chat(chat_id, user.id)
        return await self.store.patch_chat(chat_id, title=title.strip())

    async def toggle_pin(self, user: User, chat_id: uuid.UUID) -> Chat:
        await self.store.require_chat(chat_id, user.id)
        return await self.store.toggle_pin(chat_id)

    async def share_chat(self, user: User, chat_id: uuid.UUID) -> Chat:
        await self.store.require_chat(chat_id, user.id)
        return await self.store.share_chat(chat_id)

    async def branch_chat(self, user: User, chat_id: uuid.UUID, message_id: uuid.UUID) -> Chat:
        return await self.store.branch_chat(chat_id, message_id, user.id)

    async def delete_chat(self, user: User, chat_id: uuid.UUID) -> None:
        await self.store.require_chat(chat_id, user.id)
        await self.store.delete_chat(chat_id)

    async def delete_unpinned_chats(self, user: User) -> int:
        return await self.store.delete_unpinned_chats(user.id)

    async def migrate_guest_chats(self, user: User, guest: User | None) -> int:
        """Hand a guest's chats and gallery over to the signed-in ``user``."""
        if user.role == UserRole.GUEST.value:
            raise InvalidOperation("Sign in to keep guest chats")
        if guest is None or guest.id == user.id:
            return 0
        if guest.role != UserRole.GUEST.value:
            raise InvalidOperation("Only guest chats can be migrated")
        migrated = await self.store.transfer_ownership(guest.id, user.id)
        logger.info("Migrated %d chats from guest %s to user %s", migrated, guest.id, user.id)
        return migrated

    # generation

    async def prepare_send(
        self,
        user: User,
        chat_id: uuid.UUID,
        content: str,
        model_id: str,
        attachments: list[Attachment] | None = None,
        tool_config: ToolConfig | None = None,
    ) -> GenerationJob:
        """Admit the message, store it and create the assistant placeholder."""
        await self.store.require_chat(chat_id, user.id)
        admission = await self._admit(user, model_id)

        is_first_message = not await self.store.has_user_message(chat_id)
        user_message = await self.store.insert_message(
            chat_id,
            MessageRole.USER.value,
            content,
            attachments=[a.model_dump() for a in attachments] if attachments else None,
        )
        history = await self._history(chat_id)
        placeholder = await self.store.insert_message(
            chat_id, MessageRole.ASSISTANT.value, "", model_id=model_id, is_complete=False
        )
        title_source = None
        if is_first_message and await self.store.claim_title_generation(chat_id):
            title_source = content

        return GenerationJob(
            chat_id=chat_id,
            assistant_message_id=placeholder.id,
            model_id=model_id,
            tool_config=tool_config or ToolConfig(),
            history=history,
            user=self._generation_user(user),
            user_message_id=user_message.id,
            remaining=admission.remaining,
            title_source=title_source,
        )

    async def run_generation(self, job: GenerationJob) -> FinalMessageState:
        title_task = None
        if job.title_source:
            title_task = asyncio.create_task(
                self.generate_title(job.chat_id, job.title_source, job.user.id)
            )
        try:
            return await self.orchestrator.generate_response(
                job.history, job.model_id, job.assistant_message_id, job.tool_config, job.user
            )
        finally:
            if title_task is not None:
                await title_task

    async def send_message(
        self,
        user: User,
        chat_id: uuid.UUID,
        content: str,
        model_id: str,
        attachments: list[Attachment] | None = None,
        tool_config: ToolConfig | None = None,
    ) -> FinalMessageState:
        job = await self.prepare_send(user, chat_id, content, model_id, attachments, tool_config)
        return await self.run_generation(job)

    async def prepare_retry(
        self,
        user: User,
        chat_id: uuid.UUID,
        message_id: uuid.UUID,
        model_id: str,
        web_search: bool = False,
    ) -> GenerationJob:
        """Drop ``message_id`` and everything after it, then queue a fresh reply."""
        await self.store.require_chat(chat_id, user.id)
        target = await self.store.require_message(message_id)
        if target.chat_id != chat_id:
            raise MessageNotFound("Message not found in chat")
        earlier = await self.store.get_messages_for_chat(chat_id, complete_only=True)
        if not any(m.position < target.position for m in earlier):
            raise InvalidOperation("Nothing left to regenerate from")
        admission = await self._admit(user, model_id)

        await self.store.delete_messages_from_index(chat_id, message_id)
        history = await self._history(chat_id)
        placeholder = await self.store.insert_message(
            chat_id, MessageRole.ASSISTANT.value, "", model_id=model_id, is_complete=False
        )
        return GenerationJob(
            chat_id=chat_id,
            assistant_message_id=placeholder.id,
            model_id=model_id,
            tool_config=ToolConfig(web_search=web_search),
            history=history,
            user=self._generation_user(user),
            remaining=admission.remaining,
        )

    async def retry_message(
        self, user: User, chat_id: uuid.UUID, message_id: uuid.UUID, model_id: str, web_search: bool = False
    ) -> FinalMessageState:
        job = await self.prepare_retry(user, chat_id, message_id, model_id, web_search)
        return await self.run_generation(job)

    async def prepare_edit(
        self,
        user: User,
        message_id: uuid.UUID,
        content: str,
        model_id: str,
        web_search: bool = False,
    ) -> GenerationJob:
        """Rewrite a user message and discard the reply that followed it."""
        message, chat = await self._owned_message(user, message_id)
        if message.role != MessageRole.USER.value:
            raise InvalidOperation("Only user messages can be edited")
        admission = await self._admit(user, model_id)

        await self.store.edit_user_message(message_id, content)
        messages = await self.store.get_messages_for_chat(chat.id)
        next_assistant = next(
            (m for m in messages if m.position > message.position and m.role == MessageRole.ASSISTANT.value),
            None,
        )
        if next_assistant is not None:
            await self.store.delete_messages_from_index(chat.id, next_assistant.id)

        history = await self._history(chat.id)
        placeholder = await self.store.insert_message(
            chat.id, MessageRole.ASSISTANT.value, "", model_id=model_id, is_complete=False
        )
        return GenerationJob(
            chat_id=chat.id,
            assistant_message_id=placeholder.id,
            model_id=model_id,
            tool_config=ToolConfig(web_search=web_search),
            history=history,
            user=self._generation_user(user),
            user_message_id=message_id,
            remaining=admission.remaining,
        )

    async def edit_message_and_regenerate(
        self, user: User, message_id: uuid.UUID, content: str, model_id: str, web_search: bool = False
    ) -> FinalMessageState:
        job = await self.prepare_edit(user, message_id, content, model_id, web_search)
        return await self.run_generation(job)

    async def cancel_message(self, user: User, message_id: uuid.UUID) -> Message:
        """Flag an in-flight reply as cancelled. The provider call itself keeps running."""
        await self._owned_message(user, message_id)
        message = await self.store.cancel_message(message_id)
        logger.info("Message %s cancelled by user %s", message_id, user.id)
        return message

    # titles

    async def generate_title(self, chat_id: uuid.UUID, message: str, user_id: uuid.UUID | None) -> str:
        """Ask the title model for a short title, falling back to the message's first words.

        Overload errors are retried with exponential backoff. The chat's
        ``is_generating_title`` flag is always cleared.
        """
        title = ""
        max_attempts = self.settings.title_max_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                resolved = await self.orchestrator.resolve_model(self.settings.title_model_id, user_id)
                raw = await resolved.model.complete(None, [{"role": "user", "content": title_prompt(message)}])
                title = clean_title(raw)
                break
            except ProviderStreamError as e:
                if e.is_overloaded and attempt < max_attempts:
                    delay = min(self.settings.title_max_backoff_seconds, 2.0 * 2 ** (attempt - 1))
                    logger.info("Title model overloaded (attempt %d/%d), retrying in %.0fs", attempt, max_attempts, delay)
                    await self._sleep(delay)
                    continue
                logger.warning("Title generation failed for chat %s: %s", chat_id, e)
                break
            except Exception:
                logger.warning("Title generation failed for chat %s", chat_id, exc_info=True)
                break

        if len(title) < 2:
            title = heuristic_title(message)
        await self.store.finish_title_generation(chat_id, title)
        logger.info("Chat %s titled %r", chat_id, title)
        return title


async def run_generation_task(service: ChatService, job: GenerationJob) -> None:
    """Background entry point for a queued generation."""
    try:
        await service.run_generation(job)
    except Exception:
        logger.exception(
            "Generation failed", extra={"chat_id": str(job.chat_id), "message_id": str(job.assistant_message_id)}
        )
        raise
