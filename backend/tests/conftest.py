"""Shared fixtures: a throwaway SQLite database per test and a wired ConvoyService."""
from datetime import datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.future import select

from convoyhub.core.database import build_engine, build_session_factory, get_session, init_db
from convoyhub.core.security import create_access_token
from convoyhub.models.domain import Convoy
from convoyhub.repositories.convoys import ConvoyRepository
from convoyhub.repositories.users import UserRepository
from convoyhub.services.convoys import ConvoyService

NEW_YORK = {"lat": 40.0, "lng": -74.0}


class FakeClock:
    """Deterministic clock; every reading is one second after the previous one."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'convoyhub-test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 1, 12, 0, 0))


@pytest.fixture
def service(session, clock):
    return ConvoyService(ConvoyRepository(session), UserRepository(session), clock=clock)


@pytest.fixture
async def service_factory(session_factory, clock):
    """Builds services on their own sessions, for simulating concurrent requests."""
    sessions = []

    def build():
        session = session_factory()
        sessions.append(session)
        return ConvoyService(ConvoyRepository(session), UserRepository(session), clock=clock)

    yield build
    for session in sessions:
        await session.close()


@pytest.fixture
async def users(session):
    repo = UserRepository(session)
    created = {}
    for name in ("alice", "bob", "carol", "dave", "erin"):
        user = await repo.add_user(name, full_name=name.title())
        created[name] = user.id
    return created


async def load_convoy(session_factory, convoy_id) -> Convoy:
    """Read the raw convoy row on a fresh session, deleted or not."""
    async with session_factory() as session:
        result = await session.execute(select(Convoy).where(Convoy.id == convoy_id))
        return result.scalars().first()


async def assert_invariants(session_factory, convoy_id):
    async with session_factory() as session:
        repo = ConvoyRepository(session)
        convoy = (await session.execute(select(Convoy).where(Convoy.id == convoy_id))).scalars().one()
        members = [m.user_id for m in await repo.list_members(convoy_id)]

    assert len(members) == convoy.member_count
    assert len(members) <= convoy.max_members
    if members:
        assert convoy.owner_id in members
    assert (convoy.join_code is not None) == (convoy.visibility.value == "invite")
    if convoy.is_live:
        assert convoy.started_at is not None
    # a convoy ended before it ever started has no window to order
    elif convoy.ended_at is not None and convoy.started_at is not None:
        assert convoy.started_at <= convoy.ended_at
    return convoy, members


def auth_headers(user_id: int) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture
async def api_client(session_factory):
    """Async HTTP client against the app, with the session dependency on the test database."""
    from convoyhub.main import app

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
