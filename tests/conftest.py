"""Test configuration and fixtures.

Each test gets a fresh in-memory SQLite database (one shared connection via
StaticPool, so every session sees the same data) and a fakeredis instance.
Services under test commit for real; nothing is rolled back between
sessions, the whole database is simply dropped with the engine.
"""

import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from typing import Any

import fakeredis
import pytest
import pytest_asyncio
import redis.asyncio as aioredis
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from cardmarket.config import settings
from cardmarket.database import Base, get_db, get_session_factory
from cardmarket.main import app
from cardmarket.models.account import Account, SubscriptionSnapshot
from cardmarket.models.lifecycle import DocumentKind
from cardmarket.models.listing import Listing, ListingStatus
from cardmarket.models.offer import Offer  # noqa: F401
from cardmarket.models.side_records import OwnerListingIndex, ShortIdMapping
from cardmarket.models.wanted_post import WantedPost  # noqa: F401
from cardmarket.redis import get_redis

# Fixed reference instant for scenario tests
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

CRON_HEADERS = {"X-Cron-Secret": settings.cron_secret}


@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(settings.test_database_url, poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def fake_redis() -> AsyncGenerator[aioredis.Redis, None]:
    client = fakeredis.FakeAsyncRedis()
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    fake_redis: aioredis.Redis,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with overridden DB and Redis dependencies."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def override_get_redis() -> AsyncGenerator[aioredis.Redis, None]:
        yield fake_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def make_account(
    db: AsyncSession,
    declared_tier: str = "standard",
    subscription: dict[str, Any] | None = None,
    snapshot_status: str | None = None,
    current_period_end: datetime | None = None,
) -> Account:
    """Insert an account, optionally with a provider snapshot."""
    account = Account(
        account_id=uuid.uuid4(),
        email=f"{uuid.uuid4().hex[:12]}@example.com",
        declared_tier=declared_tier,
        subscription=subscription,
    )
    db.add(account)
    await db.flush()
    if snapshot_status is not None:
        db.add(SubscriptionSnapshot(
            account_id=account.account_id,
            status=snapshot_status,
            current_period_end=current_period_end,
        ))
    await db.commit()
    return account


async def make_listing(
    db: AsyncSession,
    owner_id: uuid.UUID,
    created_at: datetime = T0,
    status: ListingStatus = ListingStatus.ACTIVE,
    with_side_records: bool = False,
    **fields: Any,
) -> Listing:
    """Insert a listing, optionally with its short id mapping and owner index entry."""
    listing = Listing(
        listing_id=uuid.uuid4(),
        owner_id=owner_id,
        title="Charizard 1st Edition",
        status=status,
        created_at=created_at,
        **fields,
    )
    if with_side_records:
        listing.short_id = uuid.uuid4().hex[:8]
    db.add(listing)
    if with_side_records:
        add_side_records(db, DocumentKind.LISTING, listing.listing_id, owner_id, listing.short_id)
    await db.commit()
    return listing


def add_side_records(
    db: AsyncSession,
    kind: DocumentKind,
    document_id: uuid.UUID,
    owner_id: uuid.UUID,
    short_id: str | None,
) -> None:
    if short_id:
        db.add(ShortIdMapping(short_id=short_id, kind=kind, document_id=document_id))
    db.add(OwnerListingIndex(owner_id=owner_id, document_id=document_id, kind=kind))


async def fetch_listing(db: AsyncSession, listing_id: uuid.UUID) -> Listing | None:
    """Re-read a listing from the database, bypassing the identity map."""
    result = await db.execute(
        select(Listing)
        .where(Listing.listing_id == listing_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()
