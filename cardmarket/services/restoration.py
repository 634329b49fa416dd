"""Restoration corrector: undo archivals made obsolete by a tier upgrade.

When an account becomes elevated, some of its listings may have been archived
under the shorter standard duration while the elevated duration would still
keep them alive. Those are put back exactly as they were, with the expiration
recomputed under the elevated tier. Listings that would be expired even under
the elevated tier stay archived.

Each listing is corrected in its own commit; one failure never blocks the
rest.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime

import redis.asyncio as aioredis
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cardmarket.models.account import AccountTier
from cardmarket.models.lifecycle import ArchivalReason, DocumentKind
from cardmarket.models.listing import Listing, ListingStatus
from cardmarket.services.expiration import TierPolicy
from cardmarket.services.expiry_queue import try_cancel_deletion
from cardmarket.services.outcomes import FailureKind
from cardmarket.services.tiers import resolve_tier

logger = logging.getLogger(__name__)

RESTORED_REASON = "elevated_tier_correction"


@dataclass
class RestorationError:
    listing_id: uuid.UUID
    error: str


@dataclass
class RestorationResult:
    account_id: uuid.UUID
    success: bool = True
    tier: AccountTier = AccountTier.STANDARD
    skipped: bool = False
    restored_count: int = 0
    total_scanned: int = 0
    restored_ids: list[uuid.UUID] = field(default_factory=list)
    errors: list[RestorationError] = field(default_factory=list)
    failure: FailureKind | None = None
    error: str | None = None


@dataclass(frozen=True)
class _ArchivedListing:
    listing_id: uuid.UUID
    created_at: datetime
    previous_status: ListingStatus | None


async def restore_incorrectly_archived(
    db: AsyncSession,
    account_id: uuid.UUID,
    now: datetime | None = None,
    redis: aioredis.Redis | None = None,
    policy: TierPolicy | None = None,
) -> RestorationResult:
    """Restore tier-expired listings the account's elevated tier still covers."""
    if now is None:
        now = datetime.now(UTC)
    if policy is None:
        policy = TierPolicy.from_settings()

    summary = RestorationResult(account_id=account_id)
    summary.tier = await resolve_tier(db, account_id, now)
    if summary.tier != AccountTier.ELEVATED:
        logger.info("Account %s is not elevated, no restoration needed", account_id)
        summary.skipped = True
        return summary

    try:
        result = await db.execute(
            select(
                Listing.listing_id,
                Listing.original_created_at,
                Listing.created_at,
                Listing.previous_status,
            ).where(
                Listing.owner_id == account_id,
                Listing.status == ListingStatus.ARCHIVED,
                Listing.archival_reason == ArchivalReason.TIER_DURATION_EXCEEDED,
            )
        )
        archived = [
            _ArchivedListing(
                listing_id=row.listing_id,
                created_at=row.original_created_at or row.created_at,
                previous_status=row.previous_status,
            )
            for row in result.all()
        ]
    except SQLAlchemyError as exc:
        logger.exception("Failed to list archived listings for %s", account_id)
        summary.success = False
        summary.failure = FailureKind.STORE_ERROR
        summary.error = f"Failed to list archived listings: {exc}"
        return summary

    summary.total_scanned = len(archived)
    if not archived:
        logger.info("No tier-archived listings for account %s", account_id)
        return summary

    elevated_duration = policy.duration(AccountTier.ELEVATED)
    for item in archived:
        should_expire_at = item.created_at + elevated_duration
        if now >= should_expire_at:
            logger.debug(
                "Listing %s expired even under elevated tier (%s), leaving archived",
                item.listing_id, should_expire_at.isoformat(),
            )
            continue

        try:
            restored = await _restore_listing(db, item, should_expire_at, now)
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.exception("Failed to restore listing %s", item.listing_id)
            summary.errors.append(RestorationError(item.listing_id, str(exc)))
            continue

        if not restored:
            logger.info("Listing %s changed state before restoration, skipping", item.listing_id)
            continue

        summary.restored_count += 1
        summary.restored_ids.append(item.listing_id)
        logger.info(
            "Restored listing %s for account %s, now expires %s",
            item.listing_id, account_id, should_expire_at.isoformat(),
        )
        await try_cancel_deletion(redis, DocumentKind.LISTING, item.listing_id)

    logger.info(
        "Restoration for %s: restored %d of %d archived listings (%d errors)",
        account_id, summary.restored_count, summary.total_scanned, len(summary.errors),
    )
    return summary


async def _restore_listing(
    db: AsyncSession,
    item: _ArchivedListing,
    expires_at: datetime,
    now: datetime,
) -> bool:
    result = await db.execute(
        update(Listing)
        .where(
            Listing.listing_id == item.listing_id,
            Listing.status == ListingStatus.ARCHIVED,
            Listing.archival_reason == ArchivalReason.TIER_DURATION_EXCEEDED,
        )
        .values(
            status=item.previous_status or ListingStatus.ACTIVE,
            expires_at=expires_at,
            archived_at=None,
            delete_at=None,
            archival_reason=None,
            restored_at=now,
            restored_reason=RESTORED_REASON,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
