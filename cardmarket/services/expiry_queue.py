"""Per-document deletion eventing using a Redis sorted set.

When a document is archived with a delete_at, we ZADD "<kind>:<id>" with
score = delete_at unix timestamp. A single async consumer sleeps until the
next entry is due, claims it with ZREM and deletes the document.

The scheduled sweep is the authoritative backstop: anything this queue
misses (Redis down, entry lost, consumer not running) is still eligible on
the next sweep. Redis failures are therefore logged and never propagated.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from cardmarket.models.lifecycle import DocumentKind

logger = logging.getLogger(__name__)

DELETION_KEY = "lifecycle:deletions"


def _member(kind: DocumentKind, document_id: uuid.UUID) -> str:
    return f"{kind.value}:{document_id}"


def parse_member(member: bytes | str) -> tuple[DocumentKind, uuid.UUID]:
    if isinstance(member, bytes):
        member = member.decode()
    kind, _, raw_id = member.partition(":")
    return DocumentKind(kind), uuid.UUID(raw_id)


async def enqueue_deletion(
    redis: aioredis.Redis,
    kind: DocumentKind,
    document_id: uuid.UUID,
    delete_at: datetime,
) -> None:
    """Schedule a document for deletion. Re-adding the same entry is a no-op."""
    await redis.zadd(DELETION_KEY, {_member(kind, document_id): delete_at.timestamp()})
    logger.debug("Enqueued deletion of %s %s at %s", kind.value, document_id, delete_at.isoformat())


async def cancel_deletion(
    redis: aioredis.Redis, kind: DocumentKind, document_id: uuid.UUID
) -> None:
    """Remove a document from the deletion queue (e.g. on restoration)."""
    await redis.zrem(DELETION_KEY, _member(kind, document_id))


async def try_enqueue_deletion(
    redis: aioredis.Redis | None,
    kind: DocumentKind,
    document_id: uuid.UUID,
    delete_at: datetime,
) -> bool:
    if redis is None:
        return False
    try:
        await enqueue_deletion(redis, kind, document_id, delete_at)
    except RedisError:
        logger.warning(
            "Could not enqueue deletion of %s %s, sweep will pick it up",
            kind.value, document_id, exc_info=True,
        )
        return False
    return True


async def try_cancel_deletion(
    redis: aioredis.Redis | None, kind: DocumentKind, document_id: uuid.UUID
) -> bool:
    if redis is None:
        return False
    try:
        await cancel_deletion(redis, kind, document_id)
    except RedisError:
        logger.warning(
            "Could not cancel queued deletion of %s %s", kind.value, document_id, exc_info=True,
        )
        return False
    return True


async def run_expiry_consumer() -> None:
    """Block on the sorted set, deleting documents as their delete_at arrives."""
    from cardmarket.config import settings
    from cardmarket.redis import redis_pool

    redis = aioredis.Redis(connection_pool=redis_pool)

    while True:
        try:
            entries = await redis.zrangebyscore(
                DELETION_KEY, "-inf", "+inf", start=0, num=1, withscores=True
            )

            if not entries:
                await asyncio.sleep(settings.lifecycle_consumer_idle_seconds)
                continue

            member, delete_ts = entries[0]
            now = time.time()

            if delete_ts > now:
                # Wake up periodically to pick up newly enqueued earlier entries
                await asyncio.sleep(
                    min(delete_ts - now, settings.lifecycle_consumer_max_sleep_seconds)
                )
                continue

            removed = await redis.zrem(DELETION_KEY, member)
            if not removed:
                # Another consumer got it
                continue

            try:
                kind, document_id = parse_member(member)
            except ValueError:
                logger.warning("Dropping malformed deletion queue entry %r", member)
                continue
            await _delete_due_document(kind, document_id)

        except asyncio.CancelledError:
            logger.info("Expiry consumer shutting down")
            break
        except Exception:
            logger.exception("Expiry consumer error, retrying in 5s")
            await asyncio.sleep(5)

    await redis.aclose()


async def _delete_due_document(kind: DocumentKind, document_id: uuid.UUID) -> None:
    """Delete one document whose queued delete_at has passed."""
    from cardmarket.database import async_session_factory
    from cardmarket.services.sweep import delete_document

    try:
        async with async_session_factory() as db:
            deleted = await delete_document(db, kind, document_id)
            await db.commit()
        if deleted:
            logger.info("Deleted %s %s from expiry queue", kind.value, document_id)
        else:
            logger.info(
                "Queued %s %s no longer due for deletion, skipping", kind.value, document_id
            )
    except Exception:
        logger.exception("Failed to delete %s %s, sweep will retry", kind.value, document_id)


async def recover_deletion_queue(redis: aioredis.Redis) -> int:
    """Re-enqueue every document that has a delete_at after a restart.

    ZADD is idempotent, so this is safe to run unconditionally at startup.
    """
    from sqlalchemy import select

    from cardmarket.database import async_session_factory
    from cardmarket.services.sweep import SWEEP_TARGETS

    enqueued = 0
    async with async_session_factory() as db:
        for target in SWEEP_TARGETS:
            result = await db.execute(
                select(target.id_column, target.model.delete_at).where(
                    target.model.delete_at.isnot(None)
                )
            )
            for document_id, delete_at in result.all():
                await enqueue_deletion(redis, target.kind, document_id, delete_at)
                enqueued += 1

    logger.info("Deletion queue recovery: re-enqueued %d documents", enqueued)
    return enqueued
