"""Shared test configuration and fixtures.

Each test gets a fresh in-memory SQLite database (aiosqlite + StaticPool),
so code under test may commit and roll back freely without leaking state.
"""

import uuid
from collections.abc import AsyncGenerator, Callable
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.billing.plans import PriceCatalog, get_price_catalog
from app.config import settings
from app.database import Base, get_db
from app.main import app
from app.models.subscription import Subscription
from app.models.user import User
from factories import TEST_CATALOG, WEBHOOK_SECRET, bearer


@pytest_asyncio.fixture
async def test_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    session_factory = async_sessionmaker(test_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def catalog() -> PriceCatalog:
    return TEST_CATALOG


@pytest.fixture(autouse=True)
def webhook_secret(monkeypatch) -> str:
    monkeypatch.setattr(settings, "stripe_webhook_secret", WEBHOOK_SECRET)
    return WEBHOOK_SECRET


@pytest_asyncio.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test DB session and catalog."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_price_catalog] = lambda: TEST_CATALOG

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(db_session: AsyncSession) -> Callable[..., Any]:
    """Factory: create a user, plus a subscription row when fields are given."""

    async def _make(role: str = "student", is_active: bool = True, **subscription: Any) -> User:
        unique = uuid.uuid4().hex[:8]
        user = User(
            email=f"{role}-{unique}@test.com",
            username=f"{role}-{unique}",
            is_active=is_active,
            role=role,
        )
        db_session.add(user)
        await db_session.flush()
        if subscription:
            db_session.add(Subscription(user_id=user.id, **subscription))
        # Committed so that rollbacks in the code under test keep the fixture rows.
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _make


@pytest_asyncio.fixture
async def test_user(make_user) -> User:
    return await make_user()


@pytest.fixture
def auth_headers(test_user: User) -> dict[str, str]:
    return bearer(test_user)


@pytest_asyncio.fixture
async def admin_user(make_user) -> User:
    return await make_user(role="admin")


@pytest.fixture
def admin_headers(admin_user: User) -> dict[str, str]:
    return bearer(admin_user)
