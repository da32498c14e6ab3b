"""Convoy aggregate: lifecycle, membership and live location rules.

``ConvoyService`` is the only writer of convoy state. Each public method is
one request-sized operation: it loads the convoy, checks preconditions and
applies the change through a single atomic repository call, so a rejected
operation never leaves a partial write behind.
"""
import functools
import logging
import secrets
import string
import uuid
from typing import Callable, List, Optional, Union

import httpx
from pydantic import ValidationError as PydanticValidationError
from sqlmodel import SQLModel

from convoyhub.core.errors import (
    AlreadyMemberError,
    CapacityError,
    ForbiddenError,
    InviteRequiredError,
    NotFoundError,
    NotMemberError,
    StorageUnavailable,
    ValidationError,
)
from convoyhub.core.geo import bounding_box, haversine_km
from convoyhub.core.routing import enrich_route
from convoyhub.models.domain import (
    DEFAULT_MAX_MEMBERS,
    Convoy,
    ConvoyCreate,
    ConvoyLocation,
    ConvoyPage,
    ConvoyRead,
    ConvoyUpdate,
    ConvoyVisibility,
    LocationUpdate,
    Pagination,
    UserStat,
    utc_now,
)
from convoyhub.repositories.convoys import ConvoyRepository, JoinCodeTaken
from convoyhub.repositories.users import UserRepository

logger = logging.getLogger(__name__)

JOIN_CODE_LENGTH = 6
JOIN_CODE_ALPHABET = string.ascii_uppercase + string.digits
JOIN_CODE_ATTEMPTS = 5
MAX_PAGE_SIZE = 100


def generate_join_code(length: int = JOIN_CODE_LENGTH) -> str:
    return ''.join(secrets.choice(JOIN_CODE_ALPHABET) for _ in range(length))


def normalize_join_code(code: str) -> str:
    return code.strip().upper()


def _as_uuid(convoy_id: Union[uuid.UUID, str]) -> uuid.UUID:
    if isinstance(convoy_id, uuid.UUID):
        return convoy_id
    try:
        return uuid.UUID(str(convoy_id))
    except ValueError:
        raise NotFoundError()


def _validated(model, data):
    """Validate ``data`` against an input struct, raising our ValidationError."""
    if isinstance(data, SQLModel):
        data = data.model_dump(exclude_unset=True)
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        details = [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()]
        raise ValidationError(details=details) from e


def operation(method):
    """Close whatever read transaction the operation left open, success or not."""

    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        try:
            return await method(self, *args, **kwargs)
        finally:
            await self.convoys.release()

    return wrapper


class ConvoyService:
    def __init__(
        self,
        convoys: ConvoyRepository,
        users: UserRepository,
        clock: Callable = utc_now,
        code_factory: Callable[[], str] = generate_join_code,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.convoys = convoys
        self.users = users
        self.clock = clock
        self.code_factory = code_factory
        self.http_client = http_client

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    @operation
    async def create(
        self,
        owner_id: int,
        current_center: Union[LocationUpdate, dict],
        visibility: Union[ConvoyVisibility, str] = ConvoyVisibility.PUBLIC,
        max_members: int = DEFAULT_MAX_MEMBERS,
        title: Optional[str] = None,
        description: Optional[str] = None,
        route: Optional[dict] = None,
    ) -> ConvoyRead:
        if isinstance(current_center, SQLModel):
            current_center = current_center.model_dump()
        if isinstance(route, SQLModel):
            route = route.model_dump()
        data = _validated(
            ConvoyCreate,
            {
                "title": title,
                "description": description,
                "visibility": visibility,
                "max_members": max_members,
                "route": route,
                "current_center": current_center,
            },
        )
        await self._require_user(owner_id)

        route_data = await enrich_route(data.route.model_dump() if data.route else None, client=self.http_client)
        center = data.current_center

        for _ in range(JOIN_CODE_ATTEMPTS):
            now = self.clock()
            join_code = None
            if data.visibility == ConvoyVisibility.INVITE:
                join_code = await self._unused_join_code()
            convoy = Convoy(
                owner_id=owner_id,
                title=data.title,
                description=data.description,
                visibility=data.visibility,
                join_code=join_code,
                max_members=data.max_members,
                route=route_data,
                center_lat=center.lat,
                center_lng=center.lng,
                center_heading=center.heading,
                center_speed=center.speed,
                center_accuracy=center.accuracy,
                center_updated_at=now,
                created_at=now,
                updated_at=now,
            )
            cid = convoy.id
            try:
                await self.convoys.insert(convoy)
                break
            except JoinCodeTaken:
                logger.debug("Join code collision, regenerating")
        else:
            raise StorageUnavailable("Could not allocate a unique join code")

        await self.users.increment_user_stat(owner_id, UserStat.CONVOYS_CREATED)
        logger.info("Convoy %s created by user %s (%s)", cid, owner_id, data.visibility.value)
        return await self._read(cid, viewer_id=owner_id)

    @operation
    async def start(self, convoy_id, requester_id: int) -> ConvoyRead:
        cid = _as_uuid(convoy_id)
        convoy = await self._load(cid)
        await self._require_owner(convoy, requester_id, "Only the convoy owner can start the convoy")

        if not convoy.is_live:
            if not await self.convoys.set_live(cid, requester_id, self.clock()):
                # Lost a race: either ownership moved or someone else started it
                convoy = await self._load(cid)
                await self._require_owner(convoy, requester_id, "Only the convoy owner can start the convoy")
            else:
                logger.info("Convoy %s started", cid)
        return await self._read(cid, viewer_id=requester_id)

    @operation
    async def end(self, convoy_id, requester_id: int) -> ConvoyRead:
        cid = _as_uuid(convoy_id)
        convoy = await self._load(cid)
        await self._require_owner(convoy, requester_id, "Only the convoy owner can end the convoy")

        if not await self.convoys.set_ended(cid, requester_id, self.clock()):
            convoy = await self._load(cid)
            await self._require_owner(convoy, requester_id, "Only the convoy owner can end the convoy")
        logger.info("Convoy %s ended", cid)
        return await self._read(cid, viewer_id=requester_id)

    @operation
    async def delete(self, convoy_id, requester_id: int) -> None:
        cid = _as_uuid(convoy_id)
        convoy = await self._load(cid)
        await self._require_owner(convoy, requester_id, "Only the convoy owner can delete the convoy")

        if not await self.convoys.soft_delete(cid, requester_id, self.clock()):
            convoy = await self._load(cid)
            await self._require_owner(convoy, requester_id, "Only the convoy owner can delete the convoy")
        logger.info("Convoy %s deleted", cid)

    @operation
    async def update_details(self, convoy_id, requester_id: int, changes: Union[ConvoyUpdate, dict]) -> ConvoyRead:
        update = _validated(ConvoyUpdate, changes)
        values = update.model_dump(exclude_unset=True)
        cid = _as_uuid(convoy_id)
        convoy = await self._load(cid)
        await self._require_owner(convoy, requester_id, "Only the convoy owner can update convoy details")

        if "route" in values:
            values["route"] = await enrich_route(values["route"], client=self.http_client)
        if "visibility" in values and values["visibility"] is None:
            del values["visibility"]
        if "max_members" in values:
            if values["max_members"] is None:
                del values["max_members"]
            elif values["max_members"] < convoy.member_count:
                raise ValidationError("max_members is below the current member count")

        visibility = values.get("visibility", convoy.visibility)
        needs_code = visibility == ConvoyVisibility.INVITE and convoy.join_code is None
        if visibility != ConvoyVisibility.INVITE:
            values["join_code"] = None

        for _ in range(JOIN_CODE_ATTEMPTS):
            if needs_code:
                values["join_code"] = await self._unused_join_code()
            values["updated_at"] = self.clock()
            try:
                updated = await self.convoys.update_details(cid, requester_id, values)
                break
            except JoinCodeTaken:
                logger.debug("Join code collision, regenerating")
        else:
            raise StorageUnavailable("Could not allocate a unique join code")

        if not updated:
            convoy = await self._load(cid)
            await self._require_owner(convoy, requester_id, "Only the convoy owner can update convoy details")
            raise ValidationError("max_members is below the current member count")
        return await self._read(cid, viewer_id=requester_id)

    # ── Membership ────────────────────────────────────────────────────────────

    @operation
    async def add_member(self, convoy_id, user_id: int, requester_id: Optional[int] = None) -> ConvoyRead:
        cid = _as_uuid(convoy_id)
        convoy = await self._load(cid)
        if requester_id is not None:
            await self._require_owner(convoy, requester_id, "Only the convoy owner can manage members")
        await self._require_user(user_id)

        if not await self.convoys.is_member(cid, user_id):
            try:
                await self.convoys.add_member(cid, user_id, self.clock())
                logger.info("User %s added to convoy %s", user_id, cid)
            except AlreadyMemberError:
                pass
        return await self._read(cid, viewer_id=user_id)

    @operation
    async def join(
        self,
        user_id: int,
        convoy_id=None,
        join_code: Optional[str] = None,
    ) -> ConvoyRead:
        if join_code:
            convoy = await self.convoys.get_by_join_code(normalize_join_code(join_code))
            if convoy is None:
                raise NotFoundError("Invalid join code", code="INVALID_JOIN_CODE")
        elif convoy_id is not None:
            convoy = await self._load(convoy_id)
        else:
            raise ValidationError("A convoy id or join code is required")
        cid = convoy.id

        await self._require_user(user_id)

        if await self.convoys.is_member(cid, user_id):
            raise AlreadyMemberError()
        if convoy.member_count >= convoy.max_members:
            raise CapacityError()
        if not join_code:
            if convoy.visibility == ConvoyVisibility.INVITE:
                raise InviteRequiredError()
            if convoy.visibility == ConvoyVisibility.PRIVATE:
                raise ForbiddenError("This convoy is private")

        await self.convoys.add_member(cid, user_id, self.clock())
        await self.users.increment_user_stat(user_id, UserStat.CONVOYS_JOINED)
        logger.info("User %s joined convoy %s", user_id, cid)
        return await self._read(cid, viewer_id=user_id)

    @operation
    async def remove_member(self, convoy_id, user_id: int, requester_id: Optional[int] = None) -> ConvoyRead:
        """Remove ``user_id``. Anyone other than the member themself must be the owner."""
        cid = _as_uuid(convoy_id)
        convoy = await self._load(cid)
        on_behalf = requester_id is not None and requester_id != user_id
        if on_behalf:
            await self._require_owner(convoy, requester_id, "Only the convoy owner can remove members")
        if not await self.convoys.is_member(cid, user_id):
            raise NotMemberError()
        previous_owner = convoy.owner_id

        updated = await self.convoys.remove_member(
            cid, user_id, self.clock(), removed_by=requester_id if on_behalf else None
        )
        if updated.member_count == 0:
            logger.info("Convoy %s is empty after user %s left; ended", cid, user_id)
        elif updated.owner_id != previous_owner:
            logger.info("Convoy %s ownership moved from %s to %s", cid, previous_owner, updated.owner_id)
        return await self._read(cid)

    async def leave(self, convoy_id, user_id: int) -> ConvoyRead:
        return await self.remove_member(convoy_id, user_id)

    # ── Location ──────────────────────────────────────────────────────────────

    @operation
    async def update_location(
        self,
        convoy_id,
        user_id: int,
        lat: float,
        lng: float,
        heading: Optional[float] = None,
        speed: Optional[float] = None,
        accuracy: Optional[float] = None,
    ) -> ConvoyLocation:
        location = _validated(
            LocationUpdate,
            {"lat": lat, "lng": lng, "heading": heading, "speed": speed, "accuracy": accuracy},
        )
        cid = _as_uuid(convoy_id)
        await self._load(cid)

        now = self.clock()
        if not await self.convoys.set_center(cid, user_id, location, now):
            await self._load(cid)
            raise ForbiddenError("You are not a member of this convoy")

        await self.users.update_user_location(
            user_id, location.lat, location.lng, location.heading, location.speed, now=now
        )
        return ConvoyLocation(updated_at=now, **location.model_dump())

    # ── Queries ───────────────────────────────────────────────────────────────

    @operation
    async def get(self, convoy_id, viewer_id: Optional[int] = None) -> ConvoyRead:
        cid = _as_uuid(convoy_id)
        convoy = await self._load(cid)
        read = await self._read(cid, viewer_id=viewer_id)
        if convoy.visibility == ConvoyVisibility.PRIVATE and viewer_id not in read.member_ids():
            raise ForbiddenError("This convoy is private")
        return read

    @operation
    async def find_by_join_code(self, join_code: str) -> ConvoyRead:
        convoy = await self.convoys.get_by_join_code(normalize_join_code(join_code))
        if convoy is None:
            raise NotFoundError("Invalid join code", code="INVALID_JOIN_CODE")
        return await self._read(convoy.id, reveal_code=True)

    @operation
    async def find_nearby(
        self, lat: float, lng: float, radius_km: float = 50, limit: int = 20, offset: int = 0
    ) -> List[ConvoyRead]:
        box, limit, offset = self._nearby_query(lat, lng, radius_km, limit, offset)
        convoys = await self.convoys.find_nearby(box, limit, offset)
        return await self._with_distance(lat, lng, convoys)

    @operation
    async def nearby_page(
        self, lat: float, lng: float, radius_km: float = 50, limit: int = 20, offset: int = 0
    ) -> ConvoyPage:
        box, limit, offset = self._nearby_query(lat, lng, radius_km, limit, offset)
        total = await self.convoys.count_nearby(box)
        convoys = await self.convoys.find_nearby(box, limit, offset)
        return ConvoyPage(
            convoys=await self._with_distance(lat, lng, convoys),
            pagination=Pagination(limit=limit, offset=offset, total=total, has_more=total > offset + limit),
        )

    @operation
    async def list_live(self, limit: int = 50, offset: int = 0) -> ConvoyPage:
        limit = max(1, min(MAX_PAGE_SIZE, limit))
        offset = max(0, offset)
        convoys, total = await self.convoys.list_live(limit, offset)
        return ConvoyPage(
            convoys=await self._read_many(convoys),
            pagination=Pagination(limit=limit, offset=offset, total=total, has_more=total > offset + limit),
        )

    @operation
    async def list_for_user(self, user_id: int, limit: int = 20) -> List[ConvoyRead]:
        limit = max(1, min(MAX_PAGE_SIZE, limit))
        convoys = await self.convoys.list_for_user(user_id, limit)
        return await self._read_many(convoys, viewer_id=user_id)

    # ── Helpers ───────────────────────────────────────────────────────────────

    async def _load(self, convoy_id) -> Convoy:
        convoy = await self.convoys.get(_as_uuid(convoy_id))
        if convoy is None:
            raise NotFoundError()
        return convoy

    async def _require_user(self, user_id: int) -> None:
        if await self.users.find_user_by_id(user_id) is None:
            raise NotFoundError("User not found", code="USER_NOT_FOUND")

    async def _require_owner(self, convoy: Convoy, requester_id: int, message: str) -> None:
        # An emptied convoy keeps its owner_id, but that user no longer controls it
        if convoy.owner_id != requester_id or not await self.convoys.is_member(convoy.id, requester_id):
            raise ForbiddenError(message)

    @staticmethod
    def _nearby_query(lat: float, lng: float, radius_km: float, limit: int, offset: int):
        _validated(LocationUpdate, {"lat": lat, "lng": lng})
        if radius_km <= 0:
            raise ValidationError("radius_km must be positive")
        return bounding_box(lat, lng, radius_km), max(1, min(MAX_PAGE_SIZE, limit)), max(0, offset)

    async def _with_distance(self, lat: float, lng: float, convoys: List[Convoy]) -> List[ConvoyRead]:
        reads = await self._read_many(convoys)
        for read in reads:
            read.distance_km = round(haversine_km(lat, lng, read.current_center.lat, read.current_center.lng), 3)
        return reads

    async def _unused_join_code(self) -> str:
        code = self.code_factory()
        while await self.convoys.join_code_exists(code):
            code = self.code_factory()
        return code

    async def _read(self, convoy_id: uuid.UUID, viewer_id: Optional[int] = None, reveal_code: bool = False) -> ConvoyRead:
        convoy = await self._load(convoy_id)
        reads = await self._read_many([convoy], viewer_id=viewer_id, reveal_code=reveal_code)
        return reads[0]

    async def _read_many(self, convoys: List[Convoy], viewer_id: Optional[int] = None, reveal_code: bool = False) -> List[ConvoyRead]:
        members = await self.convoys.members_for(c.id for c in convoys)
        reads = []
        for convoy in convoys:
            convoy_members = members.get(convoy.id, [])
            show_code = reveal_code or any(m.user_id == viewer_id for m in convoy_members)
            join_code = convoy.join_code if show_code else None
            reads.append(
                ConvoyRead(
                    id=convoy.id,
                    owner_id=convoy.owner_id,
                    title=convoy.title,
                    description=convoy.description,
                    visibility=convoy.visibility,
                    join_code=join_code,
                    share_link=get_share_link(join_code) if join_code else None,
                    max_members=convoy.max_members,
                    is_live=convoy.is_live,
                    route=convoy.route,
                    current_center=convoy.current_center(),
                    members=convoy_members,
                    started_at=convoy.started_at,
                    ended_at=convoy.ended_at,
                    created_at=convoy.created_at,
                    updated_at=convoy.updated_at,
                )
            )
        return reads


def get_share_link(join_code: str) -> str:
    return f"convoyhub://convoy/join?code={join_code}"
