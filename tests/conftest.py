"""
Pytest fixtures for backend testing.
Provides an in-memory database, a frozen clock, seeded identities and an
HTTP client bound to a fully wired application.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient, Response
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from membership_admin.core.config import Settings
from membership_admin.db.models import AuthSession, AuthUser, Base, Event, Member
from membership_admin.db.session import create_engine_for, make_session_factory
from membership_admin.main import create_application
from membership_admin.modules.flags.defaults import seed_default_flags

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

FIXED_NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)

# token -> (session id, user id, access level, member id, expires_at)
IDENTITIES: dict[str, tuple[str, str, int, int | None, datetime]] = {
    "member-token": ("sess-member", "user-member", 1, 1, FIXED_NOW + timedelta(days=1)),
    "moderator-token": ("sess-mod", "user-mod", 2, 3, FIXED_NOW + timedelta(days=1)),
    "admin-token": ("sess-admin", "user-admin", 3, None, FIXED_NOW + timedelta(days=1)),
    "super-token": ("sess-super", "user-super", 4, None, FIXED_NOW + timedelta(days=1)),
    "expired-token": ("sess-expired", "user-expired", 3, None, FIXED_NOW - timedelta(hours=1)),
}


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(FIXED_NOW)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        environment="test",
        database_url=TEST_DATABASE_URL,
        seed_default_flags=False,
    )


@pytest_asyncio.fixture
async def test_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """Create a fresh in-memory schema per test."""
    engine = create_engine_for(test_settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


async def _seed_identities(factory: async_sessionmaker[AsyncSession]) -> None:
    async with factory() as session, session.begin():
        session.add_all(
            [
                Member(id=1, first_name="Ada", last_name="Active", email="ada@x.org", flags=1),
                Member(id=2, first_name="Ian", last_name="Inactive", email="ian@x.org", flags=0),
                Member(id=3, first_name="Mo", last_name="Derator", email="mo@x.org", flags=3),
                Event(id=1, name="Open Day", flags=3),
                Event(id=2, name="Cancelled Meetup", flags=2),
            ]
        )
        await session.flush()
        for token, (session_id, user_id, level, member_id, expires_at) in IDENTITIES.items():
            session.add(
                AuthUser(
                    id=user_id,
                    email=f"{user_id}@example.com",
                    name=user_id.replace("-", " ").title(),
                    access_level=level,
                    member_id=member_id,
                )
            )
            session.add(
                AuthSession(id=session_id, token=token, user_id=user_id, expires_at=expires_at)
            )


@pytest_asyncio.fixture
async def session_factory(
    test_engine: AsyncEngine,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory over a schema holding the standard flags and test identities."""
    factory = make_session_factory(test_engine)
    await seed_default_flags(factory)
    await _seed_identities(factory)
    yield factory


@pytest.fixture
def app(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    clock: FrozenClock,
) -> FastAPI:
    return create_application(test_settings, session_factory=session_factory, clock=clock)


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """
    HTTP client bound to the application.

    The in-memory database has a single shared connection, so the audit
    write queued by each response is drained before the next request runs.
    """

    async def drain_audit(response: Response) -> None:
        await app.state.audit_recorder.drain()

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        event_hooks={"response": [drain_audit]},
    ) as ac:
        yield ac


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    def _headers(token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    return _headers
