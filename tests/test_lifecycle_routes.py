"""HTTP tests for the listing read path and the scheduled / notifier entry points."""

import uuid
from datetime import UTC, datetime, timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from cardmarket.config import settings
from cardmarket.models.lifecycle import ArchivalReason
from cardmarket.models.listing import ListingStatus
from tests.conftest import CRON_HEADERS, fetch_listing, make_account, make_listing


def _now() -> datetime:
    return datetime.now(UTC)


async def _tier_archived_listing(db: AsyncSession, owner_id: uuid.UUID, **fields):  # type: ignore[no-untyped-def]
    now = _now()
    defaults = {
        "created_at": now - timedelta(days=3),
        "status": ListingStatus.ARCHIVED,
        "archived_at": now - timedelta(days=1),
        "delete_at": now + timedelta(days=6),
        "archival_reason": ArchivalReason.TIER_DURATION_EXCEEDED,
        "previous_status": ListingStatus.ACTIVE,
    }
    defaults.update(fields)
    return await make_listing(db, owner_id, **defaults)


# --- Auth ---

@pytest.mark.asyncio
async def test_lifecycle_requires_secret(client: AsyncClient) -> None:
    resp = await client.post("/lifecycle/sweep-deletable")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_lifecycle_rejects_wrong_secret(client: AsyncClient) -> None:
    resp = await client.post("/lifecycle/sweep-deletable", headers={"X-Cron-Secret": "nope"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_lifecycle_accepts_admin_bearer(client: AsyncClient) -> None:
    resp = await client.post(
        "/lifecycle/sweep-deletable",
        headers={"Authorization": f"Bearer {settings.admin_secret}"},
    )
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_empty_secret_never_matches(client: AsyncClient) -> None:
    object.__setattr__(settings, "cron_secret", "")
    resp = await client.post("/lifecycle/sweep-deletable", headers={"X-Cron-Secret": ""})
    assert resp.status_code == 401


# --- Listing read path ---

@pytest.mark.asyncio
async def test_get_listing_archives_lazily(client: AsyncClient, db_session: AsyncSession) -> None:
    account = await make_account(db_session)
    listing = await make_listing(db_session, account.account_id, created_at=_now() - timedelta(hours=49))

    resp = await client.get(f"/listings/{listing.listing_id}")

    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "archived"
    assert data["archival_reason"] == "tier_duration_exceeded"
    archived_at = datetime.fromisoformat(data["archived_at"])
    delete_at = datetime.fromisoformat(data["delete_at"])
    assert delete_at - archived_at == timedelta(days=7)


@pytest.mark.asyncio
async def test_get_active_listing_reports_derived_expiration(
    client: AsyncClient, db_session: AsyncSession
) -> None:
    account = await make_account(db_session)
    created = _now() - timedelta(hours=1)
    listing = await make_listing(db_session, account.account_id, created_at=created)

    resp = await client.get(f"/listings/{listing.listing_id}")

    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "active"
    assert datetime.fromisoformat(data["expires_at"]) == created + timedelta(hours=48)


@pytest.mark.asyncio
async def test_get_missing_listing(client: AsyncClient) -> None:
    resp = await client.get(f"/listings/{uuid.uuid4()}")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_get_listing_store_outage(
    client: AsyncClient, db_session: AsyncSession, monkeypatch: pytest.MonkeyPatch
) -> None:
    account = await make_account(db_session)
    listing = await make_listing(db_session, account.account_id, created_at=_now())
    listing_id = listing.listing_id

    async def failing_execute(*args, **kwargs):  # type: ignore[no-untyped-def]
        raise OperationalError("SELECT", {}, Exception("store down"))

    monkeypatch.setattr(db_session, "execute", failing_execute)
    resp = await client.get(f"/listings/{listing_id}")

    assert resp.status_code == 503
    assert resp.json()["detail"] == "Listing store unavailable"


@pytest.mark.asyncio
async def test_expiration_endpoint(client: AsyncClient, db_session: AsyncSession) -> None:
    account = await make_account(db_session, declared_tier="elevated")
    created = _now() - timedelta(days=5)
    listing = await make_listing(db_session, account.account_id, created_at=created)

    resp = await client.get(f"/listings/{listing.listing_id}/expiration")

    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "active"
    assert datetime.fromisoformat(data["expires_at"]) == created + timedelta(days=30)


@pytest.mark.asyncio
async def test_expiration_endpoint_missing_listing(client: AsyncClient) -> None:
    resp = await client.get(f"/listings/{uuid.uuid4()}/expiration")
    assert resp.status_code == 404


# --- Scheduled triggers ---

@pytest.mark.asyncio
async def test_archive_expired_endpoint(client: AsyncClient, db_session: AsyncSession) -> None:
    account = await make_account(db_session)
    expired = await make_listing(db_session, account.account_id, created_at=_now() - timedelta(days=3))
    await make_listing(db_session, account.account_id, created_at=_now())

    resp = await client.post("/lifecycle/archive-expired", headers=CRON_HEADERS)

    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["scanned"] == 2  # rows without a stored expiration are evaluated too
    assert data["archived"] == 1
    assert data["failure"] is None
    assert (await fetch_listing(db_session, expired.listing_id)).status == ListingStatus.ARCHIVED


@pytest.mark.asyncio
async def test_archive_expired_rejects_oversized_batch(client: AsyncClient) -> None:
    resp = await client.post("/lifecycle/archive-expired?batch_size=501", headers=CRON_HEADERS)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_sweep_endpoint(client: AsyncClient, db_session: AsyncSession) -> None:
    account = await make_account(db_session)
    due = await _tier_archived_listing(
        db_session, account.account_id, delete_at=_now() - timedelta(minutes=5),
    )
    await _tier_archived_listing(db_session, account.account_id)

    resp = await client.post("/lifecycle/sweep-deletable?batch_size=10", headers=CRON_HEADERS)

    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["found"] == 1
    assert data["deleted"] == 1
    assert data["by_kind"]["listing"] == {"found": 1, "deleted": 1, "errored": 0}
    assert await fetch_listing(db_session, due.listing_id) is None


# --- Tier-change notifier ---

@pytest.mark.asyncio
async def test_reconcile_restores_after_upgrade(client: AsyncClient, db_session: AsyncSession) -> None:
    account = await make_account(db_session)
    listing = await _tier_archived_listing(db_session, account.account_id)
    period_end = _now() + timedelta(days=30)

    resp = await client.post(
        f"/accounts/{account.account_id}/reconcile",
        json={"status": "active", "current_period_end": period_end.isoformat()},
        headers=CRON_HEADERS,
    )

    assert resp.status_code == 200
    data = resp.json()
    assert data["tier"] == "elevated"
    assert data["restored_count"] == 1
    assert data["restored_ids"] == [str(listing.listing_id)]

    stored = await fetch_listing(db_session, listing.listing_id)
    assert stored.status == ListingStatus.ACTIVE
    assert stored.delete_at is None


@pytest.mark.asyncio
async def test_reconcile_without_snapshot_for_standard_account(
    client: AsyncClient, db_session: AsyncSession
) -> None:
    account = await make_account(db_session)
    await _tier_archived_listing(db_session, account.account_id)

    resp = await client.post(f"/accounts/{account.account_id}/reconcile", headers=CRON_HEADERS)

    assert resp.status_code == 200
    data = resp.json()
    assert data["skipped"] is True
    assert data["tier"] == "standard"
    assert data["restored_count"] == 0


@pytest.mark.asyncio
async def test_reconcile_unknown_account(client: AsyncClient) -> None:
    resp = await client.post(
        f"/accounts/{uuid.uuid4()}/reconcile",
        json={"status": "active"},
        headers=CRON_HEADERS,
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_reconcile_rejects_unknown_status(client: AsyncClient, db_session: AsyncSession) -> None:
    account = await make_account(db_session)
    resp = await client.post(
        f"/accounts/{account.account_id}/reconcile",
        json={"status": "past_due"},
        headers=CRON_HEADERS,
    )
    assert resp.status_code == 422
