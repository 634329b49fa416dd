"""Sweep deleter: permanently remove documents whose grace window has ended.

A scheduled batch pass over every collection with a delete_at TTL field.
It is the authoritative backstop for per-document expiry eventing: anything
the expiry queue missed is still eligible here.

Guarantees:
- at most ``page_size`` candidates per collection per invocation; the rest
  are found again by the next run (no retry queue, deletes are idempotent),
- writes are committed in batches of at most ``sweep_batch_max_operations``
  operations, each batch in its own transaction,
- the wall-clock budget is checked between documents; when it runs out the
  in-flight batch is committed and the sweep returns partial results,
- a failed side-record delete is logged and skipped, a failed batch commit
  ends the invocation,
- documents archived for tier expiry but missing delete_at (written before
  the TTL field existed, or by a partial write) get it backfilled first, at
  most ``page_size`` per collection per run.
"""

import logging
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cardmarket.config import settings
from cardmarket.models.lifecycle import ArchivalReason, DocumentKind
from cardmarket.models.listing import Listing, ListingStatus
from cardmarket.models.offer import Offer, OfferStatus
from cardmarket.models.side_records import OwnerListingIndex, ShortIdMapping
from cardmarket.models.wanted_post import WantedPost, WantedPostStatus
from cardmarket.services.outcomes import FailureKind, TimeBudget

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepTarget:
    """A collection whose documents carry the lifecycle TTL fields."""

    kind: DocumentKind
    model: Any
    id_column: Any
    archived_status: Any


SWEEP_TARGETS: tuple[SweepTarget, ...] = (
    SweepTarget(DocumentKind.LISTING, Listing, Listing.listing_id, ListingStatus.ARCHIVED),
    SweepTarget(
        DocumentKind.WANTED_POST, WantedPost, WantedPost.wanted_post_id, WantedPostStatus.ARCHIVED
    ),
    SweepTarget(DocumentKind.OFFER, Offer, Offer.offer_id, OfferStatus.ARCHIVED),
)
TARGETS_BY_KIND = {t.kind: t for t in SWEEP_TARGETS}


@dataclass(frozen=True)
class SweepCandidate:
    kind: DocumentKind
    document_id: uuid.UUID
    owner_id: uuid.UUID | None
    short_id: str | None
    delete_at: datetime

    @property
    def operation_count(self) -> int:
        """Writes needed: the document plus each side record it has."""
        return 1 + (1 if self.short_id else 0) + (1 if self.owner_id else 0)


@dataclass
class KindCounts:
    found: int = 0
    deleted: int = 0
    errored: int = 0


@dataclass
class SweepResult:
    success: bool = True
    found: int = 0
    deleted: int = 0
    errored: int = 0
    skipped: int = 0
    backfilled: int = 0
    side_record_errors: int = 0
    batches_committed: int = 0
    max_overdue_seconds: float = 0.0
    timed_out: bool = False
    by_kind: dict[str, KindCounts] = field(default_factory=dict)
    failure: FailureKind | None = None
    error: str | None = None

    def counts_for(self, kind: DocumentKind) -> KindCounts:
        return self.by_kind.setdefault(kind.value, KindCounts())


async def _delete_side_record(db: AsyncSession, stmt, label: str) -> bool:  # type: ignore[no-untyped-def]
    """Delete one side record inside a savepoint. False if the delete failed."""
    try:
        async with db.begin_nested():
            result = await db.execute(stmt)
    except SQLAlchemyError:
        logger.warning("Failed to delete %s, skipping", label, exc_info=True)
        return False
    if result.rowcount == 0:
        logger.debug("No %s to delete", label)
    return True


async def _delete_with_side_records(
    db: AsyncSession, candidate: SweepCandidate, now: datetime
) -> tuple[bool, int]:
    """Delete a due document and its side records.

    Returns (document_deleted, failed_side_records). The primary delete is
    re-guarded on delete_at so a document restored since it was queried is
    left alone, and a document already removed by an overlapping sweep is a
    no-op.
    """
    target = TARGETS_BY_KIND[candidate.kind]
    result = await db.execute(
        delete(target.model).where(
            target.id_column == candidate.document_id,
            target.model.delete_at.isnot(None),
            target.model.delete_at <= now,
        ).execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return False, 0

    failures = 0
    if candidate.short_id:
        ok = await _delete_side_record(
            db,
            delete(ShortIdMapping).where(ShortIdMapping.short_id == candidate.short_id)
            .execution_options(synchronize_session=False),
            f"short id mapping {candidate.short_id} for {candidate.kind.value} {candidate.document_id}",
        )
        failures += 0 if ok else 1
    if candidate.owner_id:
        ok = await _delete_side_record(
            db,
            delete(OwnerListingIndex).where(
                OwnerListingIndex.owner_id == candidate.owner_id,
                OwnerListingIndex.document_id == candidate.document_id,
            ).execution_options(synchronize_session=False),
            f"owner index entry for {candidate.kind.value} {candidate.document_id}",
        )
        failures += 0 if ok else 1
    return True, failures


async def delete_document(
    db: AsyncSession,
    kind: DocumentKind,
    document_id: uuid.UUID,
    now: datetime | None = None,
) -> bool:
    """Delete a single document if its delete_at has passed. Caller commits."""
    if now is None:
        now = datetime.now(UTC)
    target = TARGETS_BY_KIND[kind]
    result = await db.execute(
        select(target.model.owner_id, target.model.short_id, target.model.delete_at).where(
            target.id_column == document_id
        )
    )
    row = result.one_or_none()
    if row is None or row.delete_at is None or row.delete_at > now:
        return False

    candidate = SweepCandidate(
        kind=kind,
        document_id=document_id,
        owner_id=row.owner_id,
        short_id=row.short_id,
        delete_at=row.delete_at,
    )
    deleted, _ = await _delete_with_side_records(db, candidate, now)
    return deleted


async def _backfill_delete_at(
    session_factory: async_sessionmaker[AsyncSession],
    target: SweepTarget,
    now: datetime,
    grace: timedelta,
    page_size: int,
) -> int:
    """Stamp delete_at on tier-archived documents that lack one.

    delete_at becomes archived_at + grace, or now + grace when archived_at
    is missing too. Each update is guarded on delete_at still being NULL.
    """
    model = target.model
    backfilled = 0
    async with session_factory() as db:
        result = await db.execute(
            select(target.id_column, model.archived_at)
            .where(
                model.status == target.archived_status,
                model.archival_reason == ArchivalReason.TIER_DURATION_EXCEEDED,
                model.delete_at.is_(None),
            )
            .limit(page_size)
        )
        rows = result.all()
        for document_id, archived_at in rows:
            delete_at = (archived_at or now) + grace
            updated = await db.execute(
                update(model)
                .where(target.id_column == document_id, model.delete_at.is_(None))
                .values(delete_at=delete_at)
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount:
                backfilled += 1
                logger.info(
                    "Backfilled delete_at %s on archived %s %s",
                    delete_at.isoformat(), target.kind.value, document_id,
                )
        await db.commit()
    return backfilled


async def _find_candidates(
    session_factory: async_sessionmaker[AsyncSession],
    target: SweepTarget,
    now: datetime,
    page_size: int,
) -> list[SweepCandidate]:
    model = target.model
    async with session_factory() as db:
        result = await db.execute(
            select(target.id_column, model.owner_id, model.short_id, model.delete_at)
            .where(model.delete_at.isnot(None), model.delete_at <= now)
            .order_by(model.delete_at.asc())
            .limit(page_size)
        )
        return [
            SweepCandidate(
                kind=target.kind,
                document_id=row[0],
                owner_id=row[1],
                short_id=row[2],
                delete_at=row[3],
            )
            for row in result.all()
        ]


async def _commit_batch(
    session_factory: async_sessionmaker[AsyncSession],
    batch: list[SweepCandidate],
    now: datetime,
    summary: SweepResult,
) -> bool:
    """Apply one write batch in its own transaction. False on commit failure."""
    deleted: list[SweepCandidate] = []
    errored: list[SweepCandidate] = []
    side_failures = 0
    skipped = 0

    async with session_factory() as db:
        try:
            for candidate in batch:
                was_deleted, failures = await _delete_with_side_records(db, candidate, now)
                if not was_deleted:
                    skipped += 1
                    continue
                deleted.append(candidate)
                if failures:
                    errored.append(candidate)
                    side_failures += failures
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.exception("Sweep batch commit failed (%d documents)", len(batch))
            summary.success = False
            summary.failure = FailureKind.BATCH_COMMIT_FAILED
            summary.error = (
                f"Batch commit failed after {summary.batches_committed} committed batches "
                f"({summary.deleted} documents deleted): {exc}"
            )
            return False

    summary.batches_committed += 1
    summary.deleted += len(deleted)
    summary.errored += len(errored)
    summary.skipped += skipped
    summary.side_record_errors += side_failures
    for candidate in deleted:
        summary.counts_for(candidate.kind).deleted += 1
    for candidate in errored:
        summary.counts_for(candidate.kind).errored += 1
    logger.info(
        "Committed sweep batch %d: %d deleted, %d already gone, %d side-record errors",
        summary.batches_committed, len(deleted), skipped, side_failures,
    )
    return True


def _record_overdue(candidate: SweepCandidate, now: datetime, summary: SweepResult) -> None:
    overdue = (now - candidate.delete_at).total_seconds()
    summary.max_overdue_seconds = max(summary.max_overdue_seconds, overdue)
    if overdue > settings.sweep_overdue_warning_seconds:
        logger.warning(
            "%s %s is %.0fs past its delete_at, scheduler may be unhealthy",
            candidate.kind.value, candidate.document_id, overdue,
        )
    else:
        logger.debug(
            "Deleting %s %s (%.0fs overdue)", candidate.kind.value, candidate.document_id, overdue
        )


async def sweep_deletable(
    session_factory: async_sessionmaker[AsyncSession],
    page_size: int | None = None,
    now: datetime | None = None,
    clock: Callable[[], float] = time.monotonic,
    kinds: Iterable[DocumentKind] | None = None,
) -> SweepResult:
    """Delete every document whose delete_at has passed, within the limits above."""
    if now is None:
        now = datetime.now(UTC)
    page_size = page_size or settings.sweep_page_size
    max_ops = settings.sweep_batch_max_operations
    grace = timedelta(days=settings.archive_grace_days)
    budget = TimeBudget(settings.sweep_time_budget_seconds, clock)
    targets = SWEEP_TARGETS if kinds is None else tuple(TARGETS_BY_KIND[k] for k in kinds)
    summary = SweepResult()

    logger.info("Starting sweep at %s (page size %d)", now.isoformat(), page_size)

    for target in targets:
        if budget.exceeded():
            summary.timed_out = True
            break

        try:
            backfilled = await _backfill_delete_at(session_factory, target, now, grace, page_size)
        except SQLAlchemyError as exc:
            logger.exception("delete_at backfill failed for %s", target.kind.value)
            summary.success = False
            summary.failure = FailureKind.STORE_ERROR
            summary.error = f"Failed to backfill delete_at on {target.kind.value} documents: {exc}"
            return summary
        summary.backfilled += backfilled

        try:
            candidates = await _find_candidates(session_factory, target, now, page_size)
        except SQLAlchemyError as exc:
            logger.exception("Sweep query failed for %s", target.kind.value)
            summary.success = False
            summary.failure = FailureKind.STORE_ERROR
            summary.error = f"Failed to query {target.kind.value} documents: {exc}"
            return summary

        summary.found += len(candidates)
        summary.counts_for(target.kind).found += len(candidates)
        if candidates:
            logger.info("Found %d %s documents due for deletion", len(candidates), target.kind.value)

        batch: list[SweepCandidate] = []
        batch_ops = 0
        for candidate in candidates:
            if budget.exceeded():
                summary.timed_out = True
                logger.warning(
                    "Sweep hit its %.0fs budget, finishing in-flight batch and stopping",
                    budget.seconds,
                )
                break

            _record_overdue(candidate, now, summary)
            ops = candidate.operation_count
            if batch and batch_ops + ops > max_ops:
                if not await _commit_batch(session_factory, batch, now, summary):
                    return summary
                batch = []
                batch_ops = 0
            batch.append(candidate)
            batch_ops += ops

        if batch and not await _commit_batch(session_factory, batch, now, summary):
            return summary
        if summary.timed_out:
            break

    logger.info(
        "Sweep done: found=%d deleted=%d errored=%d backfilled=%d batches=%d max_overdue=%.0fs timed_out=%s",
        summary.found, summary.deleted, summary.errored, summary.backfilled, summary.batches_committed,
        summary.max_overdue_seconds, summary.timed_out,
    )
    return summary
