"""Scheduled-trigger and tier-change endpoints. Scheduler / admin callers only."""

import dataclasses
import logging
import uuid

import redis.asyncio as aioredis
from fastapi import APIRouter, Body, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardmarket.auth.cron import verify_cron_request
from cardmarket.database import get_db, get_session_factory
from cardmarket.redis import get_redis
from cardmarket.schemas.lifecycle import (
    ArchivalSweepResponse,
    RestorationResponse,
    SubscriptionSnapshotIn,
    SweepResponse,
)
from cardmarket.services.archival import archive_expired_listings
from cardmarket.services.outcomes import FailureKind
from cardmarket.services.subscriptions import reconcile_account
from cardmarket.services.sweep import sweep_deletable

logger = logging.getLogger(__name__)

router = APIRouter(tags=["lifecycle"], dependencies=[Depends(verify_cron_request)])


@router.post("/lifecycle/archive-expired", response_model=ArchivalSweepResponse)
async def archive_expired(
    batch_size: int | None = Query(None, ge=1, le=500),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    redis: aioredis.Redis = Depends(get_redis),
) -> ArchivalSweepResponse:
    """Archive active listings whose expiration has passed.

    Always 200: a failed run reports ``success: false`` with the progress it
    made, so the scheduler can log it and let the next run continue.
    """
    result = await archive_expired_listings(session_factory, batch_size=batch_size, redis=redis)
    return ArchivalSweepResponse.model_validate(dataclasses.asdict(result))


@router.post("/lifecycle/sweep-deletable", response_model=SweepResponse)
async def sweep(
    batch_size: int | None = Query(None, ge=1, le=500),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> SweepResponse:
    """Permanently delete documents past their delete_at."""
    result = await sweep_deletable(session_factory, page_size=batch_size)
    return SweepResponse.model_validate(dataclasses.asdict(result))


@router.post("/accounts/{account_id}/reconcile", response_model=RestorationResponse)
async def reconcile(
    account_id: uuid.UUID,
    snapshot: SubscriptionSnapshotIn | None = Body(None),
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> RestorationResponse:
    """Tier-change notifier: restore listings a tier upgrade no longer expires."""
    result = await reconcile_account(
        db,
        account_id,
        snapshot_status=snapshot.status if snapshot else None,
        current_period_end=snapshot.current_period_end if snapshot else None,
        redis=redis,
    )
    if result.failure == FailureKind.NOT_FOUND:
        raise HTTPException(status_code=404, detail=result.error)
    return RestorationResponse.model_validate(dataclasses.asdict(result))
