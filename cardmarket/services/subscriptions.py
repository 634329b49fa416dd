"""Provider subscription snapshots and the tier-change notifier."""

import logging
import uuid
from datetime import UTC, datetime

import redis.asyncio as aioredis
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cardmarket.models.account import Account, SubscriptionSnapshot
from cardmarket.services.outcomes import FailureKind
from cardmarket.services.restoration import RestorationResult, restore_incorrectly_archived

logger = logging.getLogger(__name__)


async def record_snapshot(
    db: AsyncSession,
    account_id: uuid.UUID,
    status: str,
    current_period_end: datetime | None = None,
    now: datetime | None = None,
) -> SubscriptionSnapshot:
    """Upsert the provider snapshot for an account.

    Raises LookupError if the account does not exist.
    """
    if now is None:
        now = datetime.now(UTC)

    account = await db.get(Account, account_id)
    if account is None:
        raise LookupError(f"Account {account_id} not found")

    result = await db.execute(
        select(SubscriptionSnapshot).where(SubscriptionSnapshot.account_id == account_id)
    )
    snapshot = result.scalar_one_or_none()
    if snapshot is None:
        snapshot = SubscriptionSnapshot(account_id=account_id)
        db.add(snapshot)

    snapshot.status = status.lower()
    snapshot.current_period_end = current_period_end
    snapshot.synced_at = now
    await db.commit()
    await db.refresh(snapshot)

    logger.info(
        "Recorded subscription snapshot for %s: status=%s period_end=%s",
        account_id, snapshot.status,
        current_period_end.isoformat() if current_period_end else None,
    )
    return snapshot


async def reconcile_account(
    db: AsyncSession,
    account_id: uuid.UUID,
    snapshot_status: str | None = None,
    current_period_end: datetime | None = None,
    now: datetime | None = None,
    redis: aioredis.Redis | None = None,
) -> RestorationResult:
    """Entry point for tier changes (e.g. a subscription webhook).

    Stores the fresh provider snapshot when one is supplied, then runs the
    restoration corrector against the account's new tier.
    """
    if snapshot_status is not None:
        try:
            await record_snapshot(db, account_id, snapshot_status, current_period_end, now)
        except LookupError as exc:
            return RestorationResult(
                account_id=account_id,
                success=False,
                failure=FailureKind.NOT_FOUND,
                error=str(exc),
            )
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.exception("Failed to record subscription snapshot for %s", account_id)
            return RestorationResult(
                account_id=account_id,
                success=False,
                failure=FailureKind.STORE_ERROR,
                error=f"Failed to record subscription snapshot: {exc}",
            )

    return await restore_incorrectly_archived(db, account_id, now=now, redis=redis)
