"""Convoy persistence.

Every mutation here is a single atomic storage call: membership changes are
guarded by conditional ``UPDATE`` statements on the convoy row (capacity,
ownership, soft-delete) instead of read-then-write in application code, so
concurrent requests on the same convoy cannot break its invariants.
"""
import logging
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import case, delete, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from convoyhub.core.errors import (
    AlreadyMemberError,
    CapacityError,
    ForbiddenError,
    NotFoundError,
    NotMemberError,
)
from convoyhub.core.geo import BoundingBox
from convoyhub.models.domain import (
    Convoy,
    ConvoyMember,
    ConvoyMemberRead,
    ConvoyVisibility,
    LocationUpdate,
    User,
)
from convoyhub.repositories.base import storage_guard

logger = logging.getLogger(__name__)


class JoinCodeTaken(Exception):
    """Raised when a generated join code collides with an existing one."""


class ConvoyRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    # ── Reads ─────────────────────────────────────────────────────────────────

    def _active(self):
        return select(Convoy).where(Convoy.deleted_at.is_(None)).execution_options(populate_existing=True)

    async def get(self, convoy_id: uuid.UUID) -> Optional[Convoy]:
        async with storage_guard(self.session):
            result = await self.session.execute(self._active().where(Convoy.id == convoy_id))
            return result.scalars().first()

    async def get_by_join_code(self, join_code: str) -> Optional[Convoy]:
        async with storage_guard(self.session):
            result = await self.session.execute(self._active().where(Convoy.join_code == join_code))
            return result.scalars().first()

    async def join_code_exists(self, join_code: str) -> bool:
        # Deleted convoys keep their codes, so they are checked too
        async with storage_guard(self.session):
            result = await self.session.execute(select(Convoy.id).where(Convoy.join_code == join_code))
            return result.first() is not None

    async def is_member(self, convoy_id: uuid.UUID, user_id: int) -> bool:
        async with storage_guard(self.session):
            result = await self.session.execute(
                select(ConvoyMember.user_id).where(
                    ConvoyMember.convoy_id == convoy_id,
                    ConvoyMember.user_id == user_id,
                )
            )
            return result.first() is not None

    async def list_members(self, convoy_id: uuid.UUID) -> List[ConvoyMemberRead]:
        members = await self.members_for([convoy_id])
        return members.get(convoy_id, [])

    async def members_for(self, convoy_ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, List[ConvoyMemberRead]]:
        convoy_ids = list(convoy_ids)
        grouped: Dict[uuid.UUID, List[ConvoyMemberRead]] = {cid: [] for cid in convoy_ids}
        if not convoy_ids:
            return grouped

        async with storage_guard(self.session):
            result = await self.session.execute(
                select(ConvoyMember.convoy_id, ConvoyMember.user_id, ConvoyMember.joined_at, User.username)
                .join(User, User.id == ConvoyMember.user_id, isouter=True)
                .where(ConvoyMember.convoy_id.in_(convoy_ids))
                .order_by(ConvoyMember.convoy_id, ConvoyMember.join_seq)
            )
            for convoy_id, user_id, joined_at, username in result.all():
                grouped[convoy_id].append(
                    ConvoyMemberRead(user_id=user_id, username=username, joined_at=joined_at)
                )
        return grouped

    @staticmethod
    def _nearby_criteria(box: BoundingBox):
        return (
            Convoy.deleted_at.is_(None),
            Convoy.is_live.is_(True),
            Convoy.visibility == ConvoyVisibility.PUBLIC,
            Convoy.center_lat >= box.min_lat,
            Convoy.center_lat <= box.max_lat,
            Convoy.center_lng >= box.min_lng,
            Convoy.center_lng <= box.max_lng,
        )

    async def find_nearby(self, box: BoundingBox, limit: int, offset: int = 0) -> List[Convoy]:
        async with storage_guard(self.session):
            result = await self.session.execute(
                self._active()
                .where(*self._nearby_criteria(box))
                .order_by(Convoy.center_updated_at.desc())
                .offset(offset)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def count_nearby(self, box: BoundingBox) -> int:
        async with storage_guard(self.session):
            result = await self.session.execute(
                select(func.count()).select_from(Convoy).where(*self._nearby_criteria(box))
            )
            return result.scalar_one()

    async def list_live(self, limit: int, offset: int) -> Tuple[List[Convoy], int]:
        criteria = (
            Convoy.deleted_at.is_(None),
            Convoy.is_live.is_(True),
            Convoy.visibility == ConvoyVisibility.PUBLIC,
        )
        async with storage_guard(self.session):
            total = (await self.session.execute(select(func.count()).select_from(Convoy).where(*criteria))).scalar_one()
            result = await self.session.execute(
                self._active()
                .where(*criteria)
                .order_by(Convoy.center_updated_at.desc())
                .offset(offset)
                .limit(limit)
            )
            return list(result.scalars().all()), total

    async def list_for_user(self, user_id: int, limit: int) -> List[Convoy]:
        memberships = select(ConvoyMember.convoy_id).where(ConvoyMember.user_id == user_id)
        async with storage_guard(self.session):
            result = await self.session.execute(
                self._active()
                .where(or_(Convoy.owner_id == user_id, Convoy.id.in_(memberships)))
                .order_by(Convoy.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    # ── Writes ────────────────────────────────────────────────────────────────

    async def insert(self, convoy: Convoy) -> Convoy:
        """Persist a new convoy with its owner as the first member."""
        convoy.member_count = 1
        convoy.member_seq = 1
        async with storage_guard(self.session):
            try:
                self.session.add(convoy)
                await self.session.flush()
                self.session.add(
                    ConvoyMember(
                        convoy_id=convoy.id,
                        user_id=convoy.owner_id,
                        join_seq=1,
                        joined_at=convoy.created_at,
                    )
                )
                await self.session.commit()
            except IntegrityError as e:
                await self.session.rollback()
                if convoy.join_code is not None:
                    raise JoinCodeTaken(convoy.join_code) from e
                raise
        return convoy

    async def add_member(self, convoy_id: uuid.UUID, user_id: int, now: datetime) -> int:
        """Append a member if the convoy has room. Returns the member's join sequence."""
        async with storage_guard(self.session):
            result = await self.session.execute(
                update(Convoy)
                .execution_options(synchronize_session=False)
                .where(
                    Convoy.id == convoy_id,
                    Convoy.deleted_at.is_(None),
                    Convoy.member_count < Convoy.max_members,
                )
                .values(
                    # First member back into an emptied convoy takes it over
                    owner_id=case((Convoy.member_count == 0, user_id), else_=Convoy.owner_id),
                    member_count=Convoy.member_count + 1,
                    member_seq=Convoy.member_seq + 1,
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                await self.session.rollback()
                if await self.get(convoy_id) is None:
                    raise NotFoundError()
                raise CapacityError()

            seq = (
                await self.session.execute(select(Convoy.member_seq).where(Convoy.id == convoy_id))
            ).scalar_one()
            self.session.add(ConvoyMember(convoy_id=convoy_id, user_id=user_id, join_seq=seq, joined_at=now))
            try:
                await self.session.commit()
            except IntegrityError as e:
                # Same user joined concurrently; the counter bump is rolled back too
                await self.session.rollback()
                raise AlreadyMemberError() from e
            return seq

    async def remove_member(
        self,
        convoy_id: uuid.UUID,
        user_id: int,
        now: datetime,
        removed_by: Optional[int] = None,
    ) -> Convoy:
        """Remove a member, transferring ownership or ending the convoy as needed.

        When ``removed_by`` is someone other than ``user_id`` they must be the
        current owner at the moment of removal.
        """
        criteria = [Convoy.id == convoy_id, Convoy.deleted_at.is_(None), Convoy.member_count > 0]
        on_behalf = removed_by is not None and removed_by != user_id
        if on_behalf:
            criteria += [Convoy.owner_id == removed_by, self._membership(convoy_id, removed_by)]

        async with storage_guard(self.session):
            # Touch the convoy row first so concurrent membership changes serialise on it
            result = await self.session.execute(
                update(Convoy)
                .execution_options(synchronize_session=False)
                .where(*criteria)
                .values(member_count=Convoy.member_count - 1, updated_at=now)
            )
            if result.rowcount == 0:
                await self.session.rollback()
                if on_behalf:
                    raise ForbiddenError("Only the convoy owner can remove members")
                raise NotMemberError()

            removed = await self.session.execute(
                delete(ConvoyMember)
                .execution_options(synchronize_session=False)
                .where(
                    ConvoyMember.convoy_id == convoy_id,
                    ConvoyMember.user_id == user_id,
                )
            )
            if removed.rowcount == 0:
                await self.session.rollback()
                raise NotMemberError()

            convoy = (
                await self.session.execute(
                    select(Convoy).where(Convoy.id == convoy_id).execution_options(populate_existing=True)
                )
            ).scalars().one()

            if convoy.member_count == 0:
                # Last owner reference is kept
                convoy.is_live = False
                convoy.ended_at = now
            elif convoy.owner_id == user_id:
                next_owner = (
                    await self.session.execute(
                        select(ConvoyMember.user_id)
                        .where(ConvoyMember.convoy_id == convoy_id)
                        .order_by(ConvoyMember.join_seq)
                        .limit(1)
                    )
                ).scalar_one()
                convoy.owner_id = next_owner

            await self.session.commit()
            return convoy

    async def set_live(self, convoy_id: uuid.UUID, owner_id: int, now: datetime) -> bool:
        return await self._update_owned(
            convoy_id,
            owner_id,
            {"is_live": True, "started_at": now, "ended_at": None, "updated_at": now},
            Convoy.is_live.is_(False),
        )

    async def set_ended(self, convoy_id: uuid.UUID, owner_id: int, now: datetime) -> bool:
        return await self._update_owned(
            convoy_id,
            owner_id,
            {"is_live": False, "ended_at": now, "updated_at": now},
        )

    async def soft_delete(self, convoy_id: uuid.UUID, owner_id: int, now: datetime) -> bool:
        return await self._update_owned(
            convoy_id,
            owner_id,
            {
                "ended_at": case((Convoy.is_live.is_(True), now), else_=Convoy.ended_at),
                "is_live": False,
                "deleted_at": now,
                "updated_at": now,
            },
        )

    async def update_details(self, convoy_id: uuid.UUID, owner_id: int, values: dict) -> bool:
        criteria = []
        if "max_members" in values:
            criteria.append(Convoy.member_count <= values["max_members"])
        try:
            return await self._update_owned(convoy_id, owner_id, values, *criteria)
        except IntegrityError as e:
            if values.get("join_code") is not None:
                raise JoinCodeTaken(values["join_code"]) from e
            raise

    async def set_center(self, convoy_id: uuid.UUID, user_id: int, location: LocationUpdate, now: datetime) -> bool:
        """Replace the convoy's location snapshot, provided ``user_id`` is a member."""
        async with storage_guard(self.session):
            result = await self.session.execute(
                update(Convoy)
                .execution_options(synchronize_session=False)
                .where(Convoy.id == convoy_id, Convoy.deleted_at.is_(None), self._membership(convoy_id, user_id))
                .values(
                    center_lat=location.lat,
                    center_lng=location.lng,
                    center_heading=location.heading,
                    center_speed=location.speed,
                    center_accuracy=location.accuracy,
                    center_updated_at=now,
                    updated_at=now,
                )
            )
            await self.session.commit()
            return result.rowcount > 0

    async def release(self) -> None:
        """End any transaction left open by reads."""
        if self.session.in_transaction():
            await self.session.rollback()

    @staticmethod
    def _membership(convoy_id: uuid.UUID, user_id: int):
        return (
            select(ConvoyMember.user_id)
            .where(ConvoyMember.convoy_id == convoy_id, ConvoyMember.user_id == user_id)
            .exists()
        )

    async def _update_owned(self, convoy_id: uuid.UUID, owner_id: int, values: dict, *criteria) -> bool:
        async with storage_guard(self.session):
            result = await self.session.execute(
                update(Convoy)
                .execution_options(synchronize_session=False)
                .where(
                    Convoy.id == convoy_id,
                    Convoy.deleted_at.is_(None),
                    Convoy.owner_id == owner_id,
                    self._membership(convoy_id, owner_id),
                    *criteria,
                )
                .values(**values)
            )
            await self.session.commit()
            return result.rowcount > 0
