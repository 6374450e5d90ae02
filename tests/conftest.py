"""Pytest configuration and shared fixtures.

Every test gets its own file-backed SQLite database. Route handlers open their
own sessions, so fixture data is committed before a request is made; a write
lock held by the test's session would otherwise block the handler.
"""

import os
import uuid
from collections.abc import AsyncGenerator
from datetime import datetime

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Set testing mode BEFORE importing the app (in-memory cache, no rate limits)
os.environ["TESTING"] = "true"

from caregate.config import settings

settings.testing = True

from caregate import database
from caregate.core import permission_cache
from caregate.core.auth import DEVICE_FINGERPRINT_HEADER
from caregate.core.permissions import Role
from caregate.core.security import hash_password
from caregate.main import app
from caregate.models import Base, Child, FamilyAccessGrant, User, UserSession
from caregate.services import session_manager

TEST_PASSWORD = "correct-horse-battery"
TEST_FINGERPRINT = "device-fp-0001"

# bcrypt is slow on purpose; hash once for every test user
_PASSWORD_HASH = hash_password(TEST_PASSWORD)


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Per-test SQLite database, installed as the application's engine."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'caregate.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    database._engine = engine
    database._async_session_maker = async_sessionmaker(
        engine, class_=database.CaregateSession, expire_on_commit=False
    )
    yield engine

    database._engine = None
    database._async_session_maker = None
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine) -> async_sessionmaker[AsyncSession]:
    return database.get_session_maker()


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Provide a database session for each test."""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def reset_permission_cache():
    permission_cache.clear_cache()
    yield
    permission_cache.clear_cache()


@pytest_asyncio.fixture
async def client(db_engine) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client for testing the API."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


# ── Factories (all commit) ──


@pytest.fixture
def make_user(db_session):
    async def _make(email: str | None = None, **kwargs) -> User:
        user = User(
            email=email or f"user-{uuid.uuid4().hex[:8]}@example.com",
            hashed_password=_PASSWORD_HASH,
            **kwargs,
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make


@pytest.fixture
def make_child(db_session):
    async def _make(owner: User, display_name: str = "Sam") -> Child:
        child = Child(owner_id=owner.id, display_name=display_name)
        db_session.add(child)
        await db_session.commit()
        return child

    return _make


@pytest.fixture
def make_grant(db_session):
    async def _make(owner: User, user: User, role: Role) -> FamilyAccessGrant:
        grant = FamilyAccessGrant(
            owner_id=owner.id,
            user_id=user.id,
            role=role,
            granted_by=owner.id,
        )
        db_session.add(grant)
        await db_session.commit()
        return grant

    return _make


@pytest.fixture
def make_session(db_session):
    async def _make(
        user: User,
        fingerprint: str = TEST_FINGERPRINT,
        now: datetime | None = None,
    ) -> UserSession:
        session = await session_manager.create_session(
            db_session, user.id, fingerprint, ip_address="10.0.0.1", now=now
        )
        await db_session.commit()
        return session

    return _make


@pytest_asyncio.fixture
async def owner(make_user) -> User:
    return await make_user("owner@example.com", display_name="Owner")


@pytest_asyncio.fixture
async def child(make_child, owner) -> Child:
    return await make_child(owner, "Sam")


@pytest.fixture
def login(client):
    """Log a user in over HTTP and return request headers for that session."""

    async def _login(user: User, fingerprint: str = TEST_FINGERPRINT) -> dict[str, str]:
        response = await client.post(
            "/api/auth/login",
            json={
                "email": user.email,
                "password": TEST_PASSWORD,
                "device_fingerprint": fingerprint,
            },
        )
        assert response.status_code == 200, response.text
        return {
            "Authorization": f"Bearer {response.json()['access_token']}",
            DEVICE_FINGERPRINT_HEADER: fingerprint,
        }

    return _login
