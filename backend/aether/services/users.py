import logging
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aether.models import User, UserRole

logger = logging.getLogger(__name__)


class UserDirectory:
    """Looks up users forwarded by the gateway and creates guests on first sight."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def get_user(self, user_id: uuid.UUID) -> User | None:
        async with self.session_maker() as db:
            return await db.get(User, user_id)

    async def find_guest(self, anon_key: str) -> User | None:
        async with self.session_maker() as db:
            result = await db.execute(select(User).where(User.anon_key == anon_key))
            return result.scalar_one_or_none()

    async def get_or_create_guest(self, anon_key: str) -> User:
        user = await self.find_guest(anon_key)
        if user:
            return user
        async with self.session_maker() as db:
            user = User(anon_key=anon_key, role=UserRole.GUEST.value, preferences={})
            db.add(user)
            try:
                await db.commit()
            except IntegrityError:
                # a concurrent request created the same guest
                await db.rollback()
                user = None
            else:
                await db.refresh(user)
                logger.info("Created guest user %s", user.id)
        return user or await self.find_guest(anon_key)

    async def create_user(
        self,
        *,
        email: str | None = None,
        name: str | None = None,
        role: UserRole = UserRole.FREE,
        preferences: dict | None = None,
    ) -> User:
        async with self.session_maker() as db:
            user = User(email=email, name=name, role=role.value, preferences=preferences or {})
            db.add(user)
            await db.commit()
            await db.refresh(user)
        return user

    async def update_preferences(self, user_id: uuid.UUID, preferences: dict) -> User:
        async with self.session_maker() as db:
            user = await db.get(User, user_id)
            merged = dict(user.preferences or {})
            merged.update({k: v for k, v in preferences.items() if v is not None})
            user.preferences = merged
            await db.commit()
            await db.refresh(user)
        return user
