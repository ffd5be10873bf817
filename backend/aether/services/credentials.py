import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aether.core.config import Settings, get_settings
from aether.core.encryption import decrypt_api_key, encrypt_api_key
from aether.core.exceptions import InvalidOperation, MissingCredential
from aether.models import ApiKey

logger = logging.getLogger(__name__)


class CredentialResolver:
    """Per-user provider keys with an environment fallback.

    Lookup order: the user's default key for the service, then any key the
    user stored for it, then the key configured in settings.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], settings: Settings | None = None):
        self.session_maker = session_maker
        self.settings = settings or get_settings()

    def environment_key(self, provider: str) -> str | None:
        env_keys = {
            "gemini": self.settings.gemini_api_key,
            "groq": self.settings.groq_api_key,
            "openrouter": self.settings.openrouter_api_key,
            "moonshot": self.settings.moonshot_api_key,
            "openai": self.settings.openai_api_key,
        }
        return env_keys.get(provider) or None

    async def user_key(self, user_id: uuid.UUID | None, provider: str) -> str | None:
        if user_id is None:
            return None
        async with self.session_maker() as db:
            result = await db.execute(
                select(ApiKey)
                .where(ApiKey.user_id == user_id, ApiKey.service == provider)
                .order_by(ApiKey.is_default.desc(), ApiKey.created_at.asc())
            )
            keys = result.scalars().all()
        for key in keys:
            plaintext = decrypt_api_key(key.key_encrypted)
            if plaintext:
                return plaintext
            logger.warning("Stored %s key %s for user %s could not be decrypted", provider, key.id, user_id)
        return None

    async def resolve(self, user_id: uuid.UUID | None, provider: str) -> str:
        key = await self.user_key(user_id, provider) or self.environment_key(provider)
        if not key:
            raise MissingCredential(provider)
        return key

    async def has_user_key(self, user_id: uuid.UUID, provider: str) -> bool:
        return bool(await self.user_key(user_id, provider))

    async def list_keys(self, user_id: uuid.UUID) -> list[tuple[ApiKey, str]]:
        """Return (record, plaintext) pairs for the user's stored keys."""
        async with self.session_maker() as db:
            result = await db.execute(
                select(ApiKey).where(ApiKey.user_id == user_id).order_by(ApiKey.created_at.asc())
            )
            keys = result.scalars().all()
        return [(key, decrypt_api_key(key.key_encrypted)) for key in keys]

    async def save_key(self, user_id: uuid.UUID, service: str, name: str, plaintext: str) -> ApiKey:
        async with self.session_maker() as db:
            existing = await db.execute(
                select(ApiKey.id).where(ApiKey.user_id == user_id, ApiKey.service == service).limit(1)
            )
            api_key = ApiKey(
                user_id=user_id,
                service=service,
                name=name,
                key_encrypted=encrypt_api_key(plaintext),
                # first key for a service becomes its default
                is_default=existing.scalar_one_or_none() is None,
            )
            db.add(api_key)
            await db.commit()
            await db.refresh(api_key)
        logger.info("Saved %s key %s for user %s", service, api_key.id, user_id)
        return api_key

    async def delete_key(self, user_id: uuid.UUID, key_id: uuid.UUID) -> None:
        async with self.session_maker() as db:
            api_key = await db.get(ApiKey, key_id)
            if not api_key or api_key.user_id != user_id:
                raise InvalidOperation("API key not found")
            was_default = api_key.is_default
            service = api_key.service
            await db.delete(api_key)
            await db.flush()
            if was_default:
                result = await db.execute(
                    select(ApiKey)
                    .where(ApiKey.user_id == user_id, ApiKey.service == service)
                    .order_by(ApiKey.created_at.asc())
                    .limit(1)
                )
                successor = result.scalar_one_or_none()
                if successor:
                    successor.is_default = True
            await db.commit()

    async def set_default(self, user_id: uuid.UUID, key_id: uuid.UUID) -> ApiKey:
        async with self.session_maker() as db:
            api_key = await db.get(ApiKey, key_id)
            if not api_key or api_key.user_id != user_id:
                raise InvalidOperation("API key not found")
            await db.execute(
                update(ApiKey)
                .where(ApiKey.user_id == user_id, ApiKey.service == api_key.service, ApiKey.id != key_id)
                .values(is_default=False)
            )
            api_key.is_default = True
            await db.commit()
            await db.refresh(api_key)
        return api_key
