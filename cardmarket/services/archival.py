"""Archival transition: move expired listings from active to archived.

Runs lazily when a listing is read and eagerly from the scheduled trigger.
Both paths can race on the same listing, so the write is a conditional
single-row UPDATE guarded on the status that was read: the loser of the race
updates nothing and reports ``already_archived``.
"""

import enum
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

import redis.asyncio as aioredis
from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardmarket.config import settings
from cardmarket.models.account import AccountTier
from cardmarket.models.lifecycle import ArchivalReason, DocumentKind
from cardmarket.models.listing import Listing, ListingStatus
from cardmarket.services.expiration import TierPolicy, compute_expiration
from cardmarket.services.expiry_queue import try_enqueue_deletion
from cardmarket.services.outcomes import FailureKind, TimeBudget
from cardmarket.services.tiers import resolve_tier, resolve_tiers

logger = logging.getLogger(__name__)

# Listings in these states are never archived for expiry
_INELIGIBLE_STATUSES = (ListingStatus.SOLD, ListingStatus.DELETED)


class ArchiveCheckStatus(enum.Enum):
    ALREADY_ARCHIVED = "already_archived"
    ARCHIVED = "archived"
    ACTIVE = "active"
    INELIGIBLE = "ineligible"


@dataclass
class ArchiveCheckResult:
    """Outcome of a single check-and-archive call."""

    listing_id: uuid.UUID
    success: bool
    status: ArchiveCheckStatus | None = None
    expires_at: datetime | None = None
    archived_at: datetime | None = None
    delete_at: datetime | None = None
    failure: FailureKind | None = None
    error: str | None = None


@dataclass
class ArchivalSweepResult:
    """Outcome of one scheduled archival pass."""

    success: bool = True
    scanned: int = 0
    archived: int = 0
    already_archived: int = 0
    batches_committed: int = 0
    timed_out: bool = False
    failure: FailureKind | None = None
    error: str | None = None
    archived_ids: list[uuid.UUID] = field(default_factory=list)


def archive_values(listing: Listing, now: datetime, policy: TierPolicy) -> dict:
    """Column values for archiving a listing for tier-duration expiry."""
    return {
        "status": ListingStatus.ARCHIVED,
        "archived_at": now,
        "archival_reason": ArchivalReason.TIER_DURATION_EXCEEDED,
        "delete_at": now + policy.grace_window(),
        "original_created_at": listing.original_created_at or listing.created_at,
        "previous_status": listing.status,
        "previous_expires_at": listing.expires_at,
        "updated_at": now,
    }


async def _apply_archive(
    db: AsyncSession, listing: Listing, values: dict
) -> bool:
    """Conditional update. False if someone else changed the status first."""
    result = await db.execute(
        update(Listing)
        .where(
            Listing.listing_id == listing.listing_id,
            Listing.status == listing.status,
            Listing.status != ListingStatus.ARCHIVED,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def _failure(
    listing_id: uuid.UUID, kind: FailureKind, message: str
) -> ArchiveCheckResult:
    return ArchiveCheckResult(
        listing_id=listing_id, success=False, failure=kind, error=message
    )


async def check_and_archive(
    db: AsyncSession,
    listing_id: uuid.UUID,
    now: datetime | None = None,
    redis: aioredis.Redis | None = None,
    policy: TierPolicy | None = None,
) -> ArchiveCheckResult:
    """Archive the listing if its authoritative expiration has passed.

    Safe to call repeatedly and concurrently. Failures are returned, not
    raised; the lazy read path shows the listing as-is and retries on the
    next read.
    """
    if now is None:
        now = datetime.now(UTC)
    if policy is None:
        policy = TierPolicy.from_settings()

    try:
        result = await db.execute(
            select(Listing)
            .where(Listing.listing_id == listing_id)
            .execution_options(populate_existing=True)
        )
        listing = result.scalar_one_or_none()
    except SQLAlchemyError as exc:
        logger.exception("Failed to fetch listing %s", listing_id)
        return _failure(listing_id, FailureKind.STORE_ERROR, f"Failed to retrieve listing: {exc}")

    if listing is None:
        logger.info("Listing %s not found", listing_id)
        return _failure(listing_id, FailureKind.NOT_FOUND, "Listing not found")

    if listing.status == ListingStatus.ARCHIVED:
        return ArchiveCheckResult(
            listing_id=listing_id,
            success=True,
            status=ArchiveCheckStatus.ALREADY_ARCHIVED,
            archived_at=listing.archived_at,
            delete_at=listing.delete_at,
        )

    if listing.status in _INELIGIBLE_STATUSES:
        return ArchiveCheckResult(
            listing_id=listing_id, success=True, status=ArchiveCheckStatus.INELIGIBLE
        )

    tier = await resolve_tier(db, listing.owner_id, now)
    expires_at = compute_expiration(
        listing.created_at, tier, listing.explicit_expiration, policy
    )

    if now <= expires_at:
        logger.debug(
            "Listing %s not expired yet (expires %s, tier %s)",
            listing_id, expires_at.isoformat(), tier.value,
        )
        return ArchiveCheckResult(
            listing_id=listing_id,
            success=True,
            status=ArchiveCheckStatus.ACTIVE,
            expires_at=expires_at,
        )

    values = archive_values(listing, now, policy)
    try:
        archived = await _apply_archive(db, listing, values)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Failed to archive listing %s", listing_id)
        return _failure(listing_id, FailureKind.STORE_ERROR, f"Failed to archive listing: {exc}")

    if not archived:
        logger.info("Listing %s was archived concurrently, nothing to do", listing_id)
        return ArchiveCheckResult(
            listing_id=listing_id,
            success=True,
            status=ArchiveCheckStatus.ALREADY_ARCHIVED,
            expires_at=expires_at,
        )

    logger.info(
        "Archived listing %s (tier %s, expired %s, delete at %s)",
        listing_id, tier.value, expires_at.isoformat(), values["delete_at"].isoformat(),
    )
    await try_enqueue_deletion(redis, DocumentKind.LISTING, listing_id, values["delete_at"])
    return ArchiveCheckResult(
        listing_id=listing_id,
        success=True,
        status=ArchiveCheckStatus.ARCHIVED,
        expires_at=expires_at,
        archived_at=values["archived_at"],
        delete_at=values["delete_at"],
    )


async def archive_expired_listings(
    session_factory: async_sessionmaker[AsyncSession],
    batch_size: int | None = None,
    now: datetime | None = None,
    redis: aioredis.Redis | None = None,
    policy: TierPolicy | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> ArchivalSweepResult:
    """Scheduled trigger: archive every expired active listing.

    Candidates are active listings whose stored expiration has passed or
    was never set. They are read ``batch_size`` at a time, keyed on
    ``(created_at, listing_id)``, so rows that turn out to be unexpired
    (an elevated owner with no stored expiration) never hide the rows
    behind them. Owners' tiers are resolved in bulk per page, then archives
    are written in batches of at most ``sweep_batch_max_operations`` updates.
    Paging stops when candidates or the time budget run out; anything left
    over is found again on the next run.
    """
    if now is None:
        now = datetime.now(UTC)
    if policy is None:
        policy = TierPolicy.from_settings()
    page_size = batch_size or settings.sweep_page_size
    max_ops = settings.sweep_batch_max_operations
    budget = TimeBudget(settings.sweep_time_budget_seconds, clock)
    summary = ArchivalSweepResult()

    async with session_factory() as db:
        pending: list[tuple[uuid.UUID, datetime]] = []
        after: tuple[datetime, uuid.UUID] | None = None
        while True:
            if after is not None and budget.exceeded():
                summary.timed_out = True
                break
            try:
                candidates = await _archival_candidates(db, now, page_size, after)
            except SQLAlchemyError as exc:
                logger.exception("Archival sweep query failed")
                summary.success = False
                summary.failure = FailureKind.STORE_ERROR
                summary.error = f"Failed to query archival candidates: {exc}"
                return summary
            if not candidates:
                break

            summary.scanned += len(candidates)
            logger.info("Archival sweep: %d candidate listings in page", len(candidates))
            after = (candidates[-1].created_at, candidates[-1].listing_id)
            tiers = await resolve_tiers(db, [c.owner_id for c in candidates], now)

            for listing in candidates:
                if budget.exceeded():
                    summary.timed_out = True
                    break

                tier = tiers.get(listing.owner_id, AccountTier.STANDARD)
                expires_at = compute_expiration(
                    listing.created_at, tier, listing.explicit_expiration, policy
                )
                if now <= expires_at:
                    continue

                values = archive_values(listing, now, policy)
                try:
                    if await _apply_archive(db, listing, values):
                        pending.append((listing.listing_id, values["delete_at"]))
                    else:
                        summary.already_archived += 1
                except SQLAlchemyError as exc:
                    await db.rollback()
                    logger.exception("Archival sweep write failed for listing %s", listing.listing_id)
                    summary.success = False
                    summary.failure = FailureKind.BATCH_COMMIT_FAILED
                    summary.error = (
                        f"Failed to archive listing {listing.listing_id} after "
                        f"{summary.batches_committed} committed batches: {exc}"
                    )
                    return summary

                if len(pending) >= max_ops:
                    if not await _commit_archive_batch(db, pending, summary, redis):
                        return summary
                    pending = []

            if summary.timed_out or len(candidates) < page_size:
                break

        if summary.timed_out:
            logger.warning(
                "Archival sweep hit its %.0fs budget after %d listings",
                budget.seconds, summary.archived + summary.already_archived + len(pending),
            )
        if pending:
            await _commit_archive_batch(db, pending, summary, redis)

    logger.info(
        "Archival sweep done: scanned=%d archived=%d already_archived=%d batches=%d timed_out=%s",
        summary.scanned, summary.archived, summary.already_archived,
        summary.batches_committed, summary.timed_out,
    )
    return summary


async def _archival_candidates(
    db: AsyncSession,
    now: datetime,
    page_size: int,
    after: tuple[datetime, uuid.UUID] | None,
) -> list[Listing]:
    query = (
        select(Listing)
        .where(
            Listing.status == ListingStatus.ACTIVE,
            or_(Listing.expires_at.is_(None), Listing.expires_at <= now),
        )
        .order_by(Listing.created_at.asc(), Listing.listing_id.asc())
        .limit(page_size)
    )
    if after is not None:
        created_at, listing_id = after
        query = query.where(
            or_(
                Listing.created_at > created_at,
                and_(Listing.created_at == created_at, Listing.listing_id > listing_id),
            )
        )
    result = await db.execute(query)
    return list(result.scalars().all())


async def _commit_archive_batch(
    db: AsyncSession,
    pending: list[tuple[uuid.UUID, datetime]],
    summary: ArchivalSweepResult,
    redis: aioredis.Redis | None,
) -> bool:
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Archival batch commit failed (%d listings)", len(pending))
        summary.success = False
        summary.failure = FailureKind.BATCH_COMMIT_FAILED
        summary.error = (
            f"Batch commit failed after {summary.batches_committed} committed batches "
            f"({summary.archived} listings archived): {exc}"
        )
        return False

    summary.batches_committed += 1
    summary.archived += len(pending)
    logger.info("Committed archival batch %d with %d listings", summary.batches_committed, len(pending))
    for listing_id, delete_at in pending:
        summary.archived_ids.append(listing_id)
        await try_enqueue_deletion(redis, DocumentKind.LISTING, listing_id, delete_at)
    return True
