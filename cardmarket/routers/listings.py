"""Listing read endpoints. Reading a listing enforces its expiration lazily."""

import dataclasses
import logging
import uuid

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cardmarket.database import get_db
from cardmarket.models.listing import Listing
from cardmarket.redis import get_redis
from cardmarket.schemas.lifecycle import ArchiveCheckResponse, ListingResponse
from cardmarket.services.archival import ArchiveCheckStatus, check_and_archive
from cardmarket.services.outcomes import FailureKind

logger = logging.getLogger(__name__)

router = APIRouter(tags=["listings"])


@router.get("/listings/{listing_id}", response_model=ListingResponse)
async def get_listing(
    listing_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> ListingResponse:
    """Get listing details, archiving it first if it has expired.

    If the expiration check fails the listing is shown as stored; the next
    read tries again.
    """
    check = await check_and_archive(db, listing_id, redis=redis)
    if check.failure == FailureKind.NOT_FOUND:
        raise HTTPException(status_code=404, detail="Listing not found")
    if not check.success:
        logger.warning("Expiration check failed for listing %s: %s", listing_id, check.error)

    try:
        result = await db.execute(
            select(Listing)
            .where(Listing.listing_id == listing_id)
            .execution_options(populate_existing=True)
        )
        listing = result.scalar_one_or_none()
    except SQLAlchemyError:
        logger.exception("Failed to read listing %s", listing_id)
        raise HTTPException(status_code=503, detail="Listing store unavailable")
    if listing is None:
        raise HTTPException(status_code=404, detail="Listing not found")

    response = ListingResponse.model_validate(listing)
    if response.expires_at is None and check.status == ArchiveCheckStatus.ACTIVE:
        # Countdown for listings whose expiration is derived rather than stored
        response.expires_at = check.expires_at
    return response


@router.get("/listings/{listing_id}/expiration", response_model=ArchiveCheckResponse)
async def check_expiration(
    listing_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> ArchiveCheckResponse:
    """Run the archival transition for one listing and report the outcome."""
    check = await check_and_archive(db, listing_id, redis=redis)
    if check.failure == FailureKind.NOT_FOUND:
        raise HTTPException(status_code=404, detail="Listing not found")
    if not check.success:
        raise HTTPException(status_code=503, detail=check.error)
    return ArchiveCheckResponse.model_validate(dataclasses.asdict(check))
