import logging
import secrets
import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aether.core.exceptions import (
    AccessDenied,
    ChatNotFound,
    ImageNotFound,
    InvalidOperation,
    MessageNotFound,
    ResearchSessionNotFound,
)
from aether.models import AIImage, Chat, Message, MessageRole, ResearchSession, ResearchStatus

logger = logging.getLogger(__name__)

DEFAULT_CHAT_TITLE = "New chat"
CANCELLED_NOTICE = "\n\n*Generation was stopped by user.*"
_MAX_INSERT_ATTEMPTS = 10

_MESSAGE_PATCH_FIELDS = frozenset({
    "content", "model_id", "thinking", "thinking_duration", "is_complete", "tool_calls", "attachments",
})
_CHAT_PATCH_FIELDS = frozenset({
    "title", "is_pinned", "is_shared", "is_branch", "is_generating_title", "share_id",
})


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MessageStore:
    """Chat, message and research-session persistence.

    Every operation opens its own session, so concurrent tasks working on the
    same generation never share one. ``patch_message`` is a full-field
    overwrite and is safe to call repeatedly with growing snapshots.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    # chats

    async def create_chat(self, owner_id: uuid.UUID, title: str | None = None, *, is_branch: bool = False) -> Chat:
        async with self.session_maker() as db:
            chat = Chat(owner_id=owner_id, title=title or DEFAULT_CHAT_TITLE, is_branch=is_branch)
            db.add(chat)
            await db.commit()
            await db.refresh(chat)
        return chat

    async def get_chat(self, chat_id: uuid.UUID) -> Chat | None:
        async with self.session_maker() as db:
            return await db.get(Chat, chat_id)

    async def require_chat(self, chat_id: uuid.UUID, owner_id: uuid.UUID | None = None) -> Chat:
        chat = await self.get_chat(chat_id)
        if not chat:
            raise ChatNotFound("Chat not found")
        if owner_id is not None and chat.owner_id != owner_id:
            raise AccessDenied("No access to chat")
        return chat

    async def patch_chat(self, chat_id: uuid.UUID, **fields: Any) -> Chat:
        unknown = set(fields) - _CHAT_PATCH_FIELDS
        if unknown:
            raise ValueError(f"Cannot patch chat fields: {sorted(unknown)}")
        async with self.session_maker() as db:
            chat = await db.get(Chat, chat_id)
            if not chat:
                raise ChatNotFound("Chat not found")
            for key, value in fields.items():
                setattr(chat, key, value)
            chat.updated_at = _utc_now()
            await db.commit()
            await db.refresh(chat)
        return chat

    async def list_chats(self, owner_id: uuid.UUID, search: str | None = None, limit: int = 100) -> list[Chat]:
        query = select(Chat).where(Chat.owner_id == owner_id)
        if search and search.strip():
            query = query.where(func.lower(Chat.title).contains(search.strip().lower()))
        query = query.order_by(Chat.is_pinned.desc(), Chat.updated_at.desc()).limit(limit)
        async with self.session_maker() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def delete_chat(self, chat_id: uuid.UUID) -> None:
        async with self.session_maker() as db:
            await db.execute(delete(Message).where(Message.chat_id == chat_id))
            await db.execute(delete(Chat).where(Chat.id == chat_id))
            await db.commit()

    async def delete_unpinned_chats(self, owner_id: uuid.UUID) -> int:
        async with self.session_maker() as db:
            chat_ids = select(Chat.id).where(Chat.owner_id == owner_id, Chat.is_pinned.is_(False))
            await db.execute(delete(Message).where(Message.chat_id.in_(chat_ids)))
            result = await db.execute(
                delete(Chat).where(Chat.owner_id == owner_id, Chat.is_pinned.is_(False))
            )
            await db.commit()
        return result.rowcount or 0

    async def toggle_pin(self, chat_id: uuid.UUID) -> Chat:
        chat = await self.require_chat(chat_id)
        return await self.patch_chat(chat_id, is_pinned=not chat.is_pinned)

    async def share_chat(self, chat_id: uuid.UUID) -> Chat:
        chat = await self.require_chat(chat_id)
        return await self.patch_chat(
            chat_id, is_shared=True, share_id=chat.share_id or secrets.token_urlsafe(12)
        )

    async def get_shared_chat(self, share_id: str) -> Chat | None:
        async with self.session_maker() as db:
            result = await db.execute(
                select(Chat).where(Chat.share_id == share_id, Chat.is_shared.is_(True))
            )
            return result.scalar_one_or_none()

    async def branch_chat(self, chat_id: uuid.UUID, message_id: uuid.UUID, owner_id: uuid.UUID) -> Chat:
        """Copy the chat up to and including ``message_id`` into a new chat."""
        source = await self.require_chat(chat_id, owner_id)
        messages = await self.get_messages_for_chat(chat_id)
        cut = next((i for i, m in enumerate(messages) if m.id == message_id), None)
        if cut is None:
            raise MessageNotFound("Message not found in chat")

        async with self.session_maker() as db:
            branch = Chat(owner_id=owner_id, title=f"Branch of {source.title}", is_branch=True)
            db.add(branch)
            await db.flush()
            for position, original in enumerate(messages[: cut + 1]):
                db.add(Message(
                    chat_id=branch.id,
                    position=position,
                    role=original.role,
                    content=original.content,
                    model_id=original.model_id,
                    thinking=original.thinking,
                    thinking_duration=original.thinking_duration,
                    # an in-flight source message is copied as a finished one
                    is_complete=True,
                    is_cancelled=original.is_cancelled,
                    attachments=original.attachments,
                    tool_calls=original.tool_calls,
                ))
            await db.commit()
            await db.refresh(branch)
        return branch

    async def claim_title_generation(self, chat_id: uuid.UUID) -> bool:
        """Set ``is_generating_title`` if nobody has, returning whether this caller won."""
        async with self.session_maker() as db:
            result = await db.execute(
                update(Chat)
                .where(
                    Chat.id == chat_id,
                    Chat.title == DEFAULT_CHAT_TITLE,
                    Chat.is_generating_title.is_(False),
                )
                .values(is_generating_title=True)
                .returning(Chat.id)
            )
            claimed = result.scalar_one_or_none() is not None
            await db.commit()
        return claimed

    async def finish_title_generation(self, chat_id: uuid.UUID, title: str) -> None:
        async with self.session_maker() as db:
            await db.execute(
                update(Chat)
                .where(Chat.id == chat_id)
                .values(title=title, is_generating_title=False, updated_at=_utc_now())
            )
            await db.commit()

    # messages

    async def insert_message(
        self,
        chat_id: uuid.UUID,
        role: Literal["user", "assistant"],
        content: str = "",
        **fields: Any,
    ) -> Message:
        unknown = set(fields) - _MESSAGE_PATCH_FIELDS - {"is_cancelled"}
        if unknown:
            raise ValueError(f"Unknown message fields: {sorted(unknown)}")
        fields.setdefault("is_complete", True)
        for attempt in range(1, _MAX_INSERT_ATTEMPTS + 1):
            async with self.session_maker() as db:
                result = await db.execute(
                    select(func.coalesce(func.max(Message.position), -1)).where(Message.chat_id == chat_id)
                )
                position = result.scalar_one() + 1
                message = Message(chat_id=chat_id, position=position, role=role, content=content, **fields)
                db.add(message)
                try:
                    await db.execute(update(Chat).where(Chat.id == chat_id).values(updated_at=_utc_now()))
                    await db.commit()
                except IntegrityError:
                    # another insert took this position first
                    await db.rollback()
                    if attempt == _MAX_INSERT_ATTEMPTS:
                        raise
                    logger.debug("Position %d in chat %s taken, retrying", position, chat_id)
                    continue
                await db.refresh(message)
            return message

    async def get_message(self, message_id: uuid.UUID) -> Message | None:
        async with self.session_maker() as db:
            return await db.get(Message, message_id)

    async def require_message(self, message_id: uuid.UUID) -> Message:
        message = await self.get_message(message_id)
        if not message:
            raise MessageNotFound("Message not found")
        return message

    async def patch_message(self, message_id: uuid.UUID, **fields: Any) -> bool:
        """Overwrite the given fields. Returns False when the message is gone or cancelled.

        The ``is_cancelled = false`` guard is part of the UPDATE itself, so a
        write racing a cancellation either lands before it or not at all.
        """
        unknown = set(fields) - _MESSAGE_PATCH_FIELDS
        if unknown:
            raise ValueError(f"Cannot patch message fields: {sorted(unknown)}")
        if not fields:
            return True
        async with self.session_maker() as db:
            result = await db.execute(
                update(Message)
                .where(Message.id == message_id, Message.is_cancelled.is_(False))
                .values(**fields)
                .returning(Message.id)
            )
            applied = result.scalar_one_or_none() is not None
            await db.commit()
        return applied

    async def get_messages_for_chat(
        self,
        chat_id: uuid.UUID,
        order: Literal["asc", "desc"] = "asc",
        *,
        complete_only: bool = False,
    ) -> list[Message]:
        query = select(Message).where(Message.chat_id == chat_id)
        if complete_only:
            query = query.where(Message.is_complete.is_(True))
        ordering = Message.position.asc() if order == "asc" else Message.position.desc()
        async with self.session_maker() as db:
            result = await db.execute(query.order_by(ordering))
            return list(result.scalars().all())

    async def delete_messages_from_index(self, chat_id: uuid.UUID, from_message_id: uuid.UUID) -> int:
        """Delete ``from_message_id`` and every later message in the chat."""
        async with self.session_maker() as db:
            result = await db.execute(
                select(Message.position).where(Message.id == from_message_id, Message.chat_id == chat_id)
            )
            position = result.scalar_one_or_none()
            if position is None:
                raise MessageNotFound("Message not found in chat")
            deleted = await db.execute(
                delete(Message).where(Message.chat_id == chat_id, Message.position >= position)
            )
            await db.commit()
        logger.info("Deleted %d messages from chat %s at position %d", deleted.rowcount, chat_id, position)
        return deleted.rowcount or 0

    async def edit_user_message(self, message_id: uuid.UUID, content: str) -> Message:
        async with self.session_maker() as db:
            message = await db.get(Message, message_id)
            if not message:
                raise MessageNotFound("Message not found")
            if message.role != MessageRole.USER.value:
                raise InvalidOperation("Only user messages can be edited")
            message.content = content
            await db.commit()
            await db.refresh(message)
        return message

    async def cancel_message(self, message_id: uuid.UUID, notice: str = CANCELLED_NOTICE) -> Message:
        """Mark an in-flight assistant message cancelled and complete, appending ``notice``."""
        async with self.session_maker() as db:
            result = await db.execute(
                update(Message)
                .where(
                    Message.id == message_id,
                    Message.role == MessageRole.ASSISTANT.value,
                    Message.is_complete.is_(False),
                )
                .values(
                    is_cancelled=True,
                    is_complete=True,
                    content=func.coalesce(Message.content, "") + notice,
                )
                .returning(Message.id)
            )
            cancelled = result.scalar_one_or_none() is not None
            await db.commit()
        if not cancelled:
            message = await self.get_message(message_id)
            if not message:
                raise MessageNotFound("Message not found")
            raise InvalidOperation("Only in-progress assistant messages can be cancelled")
        return await self.require_message(message_id)

    async def has_user_message(self, chat_id: uuid.UUID) -> bool:
        async with self.session_maker() as db:
            result = await db.execute(
                select(Message.id)
                .where(Message.chat_id == chat_id, Message.role == MessageRole.USER.value)
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    # research sessions

    async def create_research_session(self, user_id: uuid.UUID, prompt: str, thoughts: str = "") -> ResearchSession:
        async with self.session_maker() as db:
            session = ResearchSession(
                user_id=user_id,
                prompt=prompt,
                thoughts=thoughts,
                status=ResearchStatus.RUNNING.value,
                actions=[],
            )
            db.add(session)
            await db.commit()
            await db.refresh(session)
        return session

    async def add_research_action(self, session_id: uuid.UUID, action: dict[str, Any]) -> None:
        async with self.session_maker() as db:
            result = await db.execute(
                select(ResearchSession).where(ResearchSession.id == session_id).with_for_update()
            )
            session = result.scalar_one_or_none()
            if not session:
                raise ResearchSessionNotFound("Research session not found")
            # reassign so the JSON column is flagged dirty
            session.actions = [*(session.actions or []), action]
            await db.commit()

    async def update_research_session(
        self,
        session_id: uuid.UUID,
        *,
        status: ResearchStatus,
        summary: str | None = None,
    ) -> None:
        values: dict[str, Any] = {"status": status.value}
        if summary is not None:
            values["summary"] = summary
        if status in (ResearchStatus.COMPLETED, ResearchStatus.FAILED):
            values["completed_at"] = _utc_now()
        async with self.session_maker() as db:
            await db.execute(update(ResearchSession).where(ResearchSession.id == session_id).values(**values))
            await db.commit()

    async def get_research_session(self, session_id: uuid.UUID) -> ResearchSession | None:
        async with self.session_maker() as db:
            return await db.get(ResearchSession, session_id)

    async def list_research_sessions(self, user_id: uuid.UUID, limit: int = 50) -> list[ResearchSession]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(ResearchSession)
                .where(ResearchSession.user_id == user_id)
                .order_by(ResearchSession.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # gallery

    async def save_ai_image(self, user_id: uuid.UUID, prompt: str, image_url: str) -> AIImage:
        async with self.session_maker() as db:
            image = AIImage(user_id=user_id, prompt=prompt, image_url=image_url)
            db.add(image)
            await db.commit()
            await db.refresh(image)
        return image

    async def list_ai_images(self, user_id: uuid.UUID, limit: int = 100) -> list[AIImage]:
        async with self.session_maker() as db:
            result = await db.execute(
                select(AIImage)
                .where(AIImage.user_id == user_id)
                .order_by(AIImage.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def delete_ai_image(self, image_id: uuid.UUID, user_id: uuid.UUID) -> None:
        async with self.session_maker() as db:
            result = await db.execute(
                delete(AIImage).where(AIImage.id == image_id, AIImage.user_id == user_id)
            )
            await db.commit()
        if not result.rowcount:
            raise ImageNotFound("Image not found")

    # guest migration

    async def transfer_ownership(self, from_owner_id: uuid.UUID, to_owner_id: uuid.UUID) -> int:
        """Move every chat and gallery image of one user to another. Returns the chat count."""
        async with self.session_maker() as db:
            result = await db.execute(
                update(Chat).where(Chat.owner_id == from_owner_id).values(owner_id=to_owner_id)
            )
            await db.execute(
                update(AIImage).where(AIImage.user_id == from_owner_id).values(user_id=to_owner_id)
            )
            await db.commit()
        return result.rowcount or 0
