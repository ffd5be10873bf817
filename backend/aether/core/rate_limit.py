import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from aether.core.clock import Clock, SystemClock
from aether.core.config import Settings, get_settings
from aether.core.exceptions import QuotaExceeded
from aether.models import MessageUsage, UserRole, UserUsage

logger = logging.getLogger(__name__)

# a lost INSERT race is followed by one more UPDATE attempt
_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class AdmissionResult:
    allowed: bool
    # None means unbounded (pro tier)
    remaining: int | None
    role: str
    limit: int | None = None


class AdmissionController:
    """Fixed-window message quota per subject.

    The check and the increment happen in one conditional UPDATE, so two
    concurrent sends can never both take the last slot. A rejection leaves
    the stored counter untouched.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        clock: Clock | None = None,
        settings: Settings | None = None,
    ):
        self.session_maker = session_maker
        self.clock = clock or SystemClock()
        settings = settings or get_settings()
        self.guest_limit = settings.guest_message_limit
        self.user_limit = settings.user_message_limit
        self.window_ms = settings.message_window_ms
        self.research_limit = settings.research_limit

    def limit_for(self, role: str) -> int | None:
        if role == UserRole.PRO.value:
            return None
        if role == UserRole.GUEST.value:
            return self.guest_limit
        return self.user_limit

    def _rejection(self, role: str, limit: int) -> QuotaExceeded:
        hours = self.window_ms // (60 * 60 * 1000)
        if role == UserRole.GUEST.value:
            message = (
                f"Guest message limit reached. You can send up to {limit} messages "
                f"every {hours} hours. Sign in to get more messages."
            )
        else:
            message = f"Message limit reached. You can send up to {limit} messages every {hours} hours."
        return QuotaExceeded(message, remaining=0, limit=limit)

    async def check_and_consume(self, subject_key: str | None, role: str) -> AdmissionResult:
        limit = self.limit_for(role)
        if limit is None:
            return AdmissionResult(allowed=True, remaining=None, role=role)
        if not subject_key:
            raise QuotaExceeded(
                "Guest messages require an anonymous session key.", remaining=0, limit=limit
            )

        for _ in range(_MAX_ATTEMPTS):
            now = self.clock.now_ms()
            window_floor = now - self.window_ms
            async with self.session_maker() as db:
                # active window with room left
                result = await db.execute(
                    update(MessageUsage)
                    .where(
                        MessageUsage.subject_key == subject_key,
                        MessageUsage.window_start > window_floor,
                        MessageUsage.count < limit,
                    )
                    .values(count=MessageUsage.count + 1, last_updated=now)
                    .returning(MessageUsage.count)
                )
                count = result.scalar_one_or_none()
                if count is None:
                    # expired window restarts at 1
                    result = await db.execute(
                        update(MessageUsage)
                        .where(
                            MessageUsage.subject_key == subject_key,
                            MessageUsage.window_start <= window_floor,
                        )
                        .values(count=1, window_start=now, last_updated=now)
                        .returning(MessageUsage.count)
                    )
                    count = result.scalar_one_or_none()
                if count is not None:
                    await db.commit()
                    return AdmissionResult(
                        allowed=True, remaining=max(0, limit - count), role=role, limit=limit
                    )

                exists = await db.execute(
                    select(MessageUsage.id).where(MessageUsage.subject_key == subject_key)
                )
                if exists.scalar_one_or_none() is not None:
                    await db.rollback()
                    logger.info("Admission rejected subject=%s role=%s", subject_key, role)
                    raise self._rejection(role, limit)

                try:
                    await db.execute(
                        insert(MessageUsage).values(
                            id=uuid.uuid4(),
                            subject_key=subject_key,
                            count=1,
                            window_start=now,
                            last_updated=now,
                        )
                    )
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    logger.debug("Usage row for %s created concurrently, retrying", subject_key)
                    continue
                return AdmissionResult(allowed=True, remaining=limit - 1, role=role, limit=limit)

        raise self._rejection(role, limit)

    async def get_status(self, subject_key: str | None, role: str) -> AdmissionResult:
        """Report the current window without consuming a slot."""
        limit = self.limit_for(role)
        if limit is None:
            return AdmissionResult(allowed=True, remaining=None, role=role)
        if not subject_key:
            return AdmissionResult(allowed=False, remaining=0, role=role, limit=limit)

        async with self.session_maker() as db:
            result = await db.execute(
                select(MessageUsage).where(MessageUsage.subject_key == subject_key)
            )
            usage = result.scalar_one_or_none()
        now = self.clock.now_ms()
        if usage is None or now - usage.window_start >= self.window_ms:
            return AdmissionResult(allowed=True, remaining=limit, role=role, limit=limit)
        remaining = max(0, limit - usage.count)
        return AdmissionResult(allowed=remaining > 0, remaining=remaining, role=role, limit=limit)

    async def consume_research(self, user_id: uuid.UUID) -> int:
        """Take one research run from the user's allowance, returning how many remain."""
        limit = self.research_limit
        for _ in range(_MAX_ATTEMPTS):
            async with self.session_maker() as db:
                result = await db.execute(
                    update(UserUsage)
                    .where(UserUsage.user_id == user_id, UserUsage.research < limit)
                    .values(research=UserUsage.research + 1)
                    .returning(UserUsage.research)
                )
                used = result.scalar_one_or_none()
                if used is not None:
                    await db.commit()
                    return limit - used

                exists = await db.execute(select(UserUsage.id).where(UserUsage.user_id == user_id))
                if exists.scalar_one_or_none() is not None:
                    await db.rollback()
                    raise QuotaExceeded(
                        f"Research limit reached. You can run up to {limit} research sessions.",
                        remaining=0,
                        limit=limit,
                    )
                try:
                    await db.execute(
                        insert(UserUsage).values(id=uuid.uuid4(), user_id=user_id, research=1)
                    )
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    continue
                return limit - 1
        raise QuotaExceeded("Research limit reached.", remaining=0, limit=limit)

    async def refund_research(self, user_id: uuid.UUID) -> None:
        async with self.session_maker() as db:
            await db.execute(
                update(UserUsage)
                .where(UserUsage.user_id == user_id, UserUsage.research > 0)
                .values(research=UserUsage.research - 1)
            )
            await db.commit()
