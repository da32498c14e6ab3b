from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
import uuid

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

MIN_MEMBERS = 2
MAX_MEMBERS = 50
DEFAULT_MAX_MEMBERS = 20


def utc_now():
    """Returns a naive UTC datetime (compatible with postgres timestamp without timezone)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ConvoyVisibility(str, Enum):
    PUBLIC = "public"
    INVITE = "invite"
    PRIVATE = "private"


class UserStat(str, Enum):
    CONVOYS_CREATED = "convoys_created"
    CONVOYS_JOINED = "convoys_joined"


# ── Tables ────────────────────────────────────────────────────────────────────

class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    full_name: Optional[str] = None

    last_lat: Optional[float] = None
    last_lng: Optional[float] = None
    last_heading: Optional[float] = None
    last_speed: Optional[float] = None
    location_updated_at: Optional[datetime] = None

    convoys_created: int = 0
    convoys_joined: int = 0
    created_at: datetime = Field(default_factory=utc_now)


class ConvoyMember(SQLModel, table=True):
    convoy_id: uuid.UUID = Field(foreign_key="convoy.id", primary_key=True)
    user_id: int = Field(foreign_key="user.id", primary_key=True, index=True)
    join_seq: int  # per-convoy join order, used for owner transfer
    joined_at: datetime = Field(default_factory=utc_now)


class Convoy(SQLModel, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    owner_id: int = Field(foreign_key="user.id", index=True)
    title: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    visibility: ConvoyVisibility = Field(default=ConvoyVisibility.PUBLIC, index=True)
    join_code: Optional[str] = Field(default=None, unique=True, index=True, max_length=6)

    max_members: int = DEFAULT_MAX_MEMBERS
    member_count: int = 0
    member_seq: int = 0

    route: Optional[dict] = Field(default=None, sa_column=Column(JSON, nullable=True))

    # current_center, replaced as a unit
    center_lat: float = Field(index=True)
    center_lng: float = Field(index=True)
    center_heading: Optional[float] = None
    center_speed: Optional[float] = None
    center_accuracy: Optional[float] = None
    center_updated_at: datetime = Field(default_factory=utc_now, index=True)

    is_live: bool = Field(default=False, index=True)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    deleted_at: Optional[datetime] = Field(default=None, index=True)

    def current_center(self) -> "ConvoyLocation":
        return ConvoyLocation(
            lat=self.center_lat,
            lng=self.center_lng,
            heading=self.center_heading,
            speed=self.center_speed,
            accuracy=self.center_accuracy,
            updated_at=self.center_updated_at,
        )


# ── Input structs ─────────────────────────────────────────────────────────────

class Waypoint(SQLModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    name: Optional[str] = Field(default=None, max_length=100)
    order: int = Field(ge=0)


class ConvoyRoute(SQLModel):
    waypoints: List[Waypoint] = []
    polyline: Optional[str] = None
    distance: Optional[float] = Field(default=None, ge=0)  # meters
    duration: Optional[float] = Field(default=None, ge=0)  # seconds


class LocationUpdate(SQLModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    heading: Optional[float] = Field(default=None, ge=0, le=360)
    speed: Optional[float] = Field(default=None, ge=0)
    accuracy: Optional[float] = Field(default=None, ge=0)


class ConvoyCreate(SQLModel):
    title: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    visibility: ConvoyVisibility = ConvoyVisibility.PUBLIC
    max_members: int = Field(default=DEFAULT_MAX_MEMBERS, ge=MIN_MEMBERS, le=MAX_MEMBERS)
    route: Optional[ConvoyRoute] = None
    current_center: LocationUpdate


class ConvoyUpdate(SQLModel):
    title: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    visibility: Optional[ConvoyVisibility] = None
    max_members: Optional[int] = Field(default=None, ge=MIN_MEMBERS, le=MAX_MEMBERS)
    route: Optional[ConvoyRoute] = None


class JoinConvoyRequest(SQLModel):
    join_code: Optional[str] = None


class AddMemberRequest(SQLModel):
    user_id: int


# ── Output structs ────────────────────────────────────────────────────────────

class ConvoyLocation(SQLModel):
    lat: float
    lng: float
    heading: Optional[float] = None
    speed: Optional[float] = None
    accuracy: Optional[float] = None
    updated_at: datetime


class ConvoyMemberRead(SQLModel):
    user_id: int
    username: Optional[str] = None
    joined_at: datetime


class ConvoyRead(SQLModel):
    id: uuid.UUID
    owner_id: int
    title: Optional[str] = None
    description: Optional[str] = None
    visibility: ConvoyVisibility
    join_code: Optional[str] = None
    share_link: Optional[str] = None
    max_members: int
    is_live: bool
    route: Optional[dict] = None
    current_center: ConvoyLocation
    members: List[ConvoyMemberRead] = []
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    distance_km: Optional[float] = None

    def member_ids(self) -> List[int]:
        return [m.user_id for m in self.members]


class Pagination(SQLModel):
    limit: int
    offset: int
    total: int
    has_more: bool


class ConvoyPage(SQLModel):
    convoys: List[ConvoyRead]
    pagination: Pagination
