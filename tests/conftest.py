import itertools
import os
from datetime import datetime, timedelta
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# In-memory MongoDB; no Redis fan-out unless a test turns it on
os.environ.setdefault("MONGODB_DB_NAME", "skillswap_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("NOTIFICATIONS_ENABLED", "false")
os.environ.setdefault("MONGODB_TRANSACTIONS", "false")


@pytest_asyncio.fixture
async def db():
    from mongomock_motor import AsyncMongoMockClient
    from app.db.init import init_db
    mongo = AsyncMongoMockClient()
    await init_db(mongo["skillswap_test"])
    yield mongo


@pytest.fixture
def make_user(db):
    from app.services import users as users_service
    counter = itertools.count(1)

    async def _make(credits: int = 0, skills: list[str] | None = None, name: str | None = None, role: str = "user"):
        n = next(counter)
        user = await users_service.create_user(
            f"user{n}@example.com",
            name or f"User {n}",
            skills_offered=[{"skill": s} for s in skills or []],
            starting_credits=credits,
        )
        if role != "user":
            user.role = role
            await user.save()
        return user

    return _make


@pytest_asyncio.fixture
async def teacher(make_user):
    return await make_user(credits=0, skills=["Mathematics", "Guitar"], name="Teacher")


@pytest_asyncio.fixture
async def student(make_user):
    return await make_user(credits=10, name="Student")


@pytest.fixture
def tomorrow() -> datetime:
    return datetime.utcnow() + timedelta(days=1)


@pytest_asyncio.fixture
async def client(db) -> AsyncGenerator[AsyncClient, None]:
    from app.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def auth_headers():
    """Signed session cookie header for a user."""
    from app.core.security import create_session_cookie
    from app.deps import SESSION_COOKIE_NAME
    from app.services.users import session_payload_for_user

    def _headers(user) -> dict[str, str]:
        return {"Cookie": f"{SESSION_COOKIE_NAME}={create_session_cookie(session_payload_for_user(user))}"}

    return _headers
