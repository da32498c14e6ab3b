"""Identity store access used by the convoy service.

User accounts are owned by the identity service; the convoy core only looks
users up, bumps their counters and records their last known location.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from convoyhub.models.domain import User, UserStat, utc_now
from convoyhub.repositories.base import storage_guard

logger = logging.getLogger(__name__)


class UserRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_user_by_id(self, user_id: int) -> Optional[User]:
        async with storage_guard(self.session):
            result = await self.session.execute(
                select(User).where(User.id == user_id).execution_options(populate_existing=True)
            )
            return result.scalars().first()

    async def add_user(self, username: str, full_name: Optional[str] = None) -> User:
        async with storage_guard(self.session):
            user = User(username=username, full_name=full_name)
            self.session.add(user)
            await self.session.commit()
            return user

    async def increment_user_stat(self, user_id: int, field: UserStat, delta: int = 1) -> None:
        column = getattr(User, UserStat(field).value)
        async with storage_guard(self.session):
            await self.session.execute(
                update(User)
                .execution_options(synchronize_session=False)
                .where(User.id == user_id)
                .values({column: column + delta})
            )
            await self.session.commit()

    async def update_user_location(
        self,
        user_id: int,
        lat: float,
        lng: float,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> None:
        async with storage_guard(self.session):
            await self.session.execute(
                update(User)
                .execution_options(synchronize_session=False)
                .where(User.id == user_id)
                .values(
                    last_lat=lat,
                    last_lng=lng,
                    last_heading=heading,
                    last_speed=speed,
                    location_updated_at=now or utc_now(),
                )
            )
            await self.session.commit()
