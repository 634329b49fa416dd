"""Tier resolver: reconcile the account's tier signals into one retention tier.

Three independently updated signals can say an account is elevated:

- the denormalized ``declared_tier`` field on the account,
- the embedded subscription sub-record on the account,
- the payment provider snapshot, synced asynchronously.

Any of them is enough ("most generous wins"). Only when no signal can be
read at all does the resolver fall back to standard.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cardmarket.config import settings
from cardmarket.models.account import Account, AccountTier, SubscriptionSnapshot
from cardmarket.services.expiration import parse_timestamp

logger = logging.getLogger(__name__)

_ENTITLED_STATUSES = ("active", "trialing")


@dataclass(frozen=True)
class EmbeddedSubscription:
    status: str
    subscription_ref: str | None = None
    end_date: Any | None = None

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "EmbeddedSubscription":
        return cls(
            status=str(doc.get("status") or "none").lower(),
            subscription_ref=doc.get("subscription_ref"),
            end_date=doc.get("end_date"),
        )


@dataclass(frozen=True)
class ProviderSnapshot:
    status: str
    current_period_end: datetime | None = None


@dataclass(frozen=True)
class TierSignals:
    """The three tier signals. None means the signal could not be read."""

    declared_tier: str | None = None
    embedded: EmbeddedSubscription | None = None
    snapshot: ProviderSnapshot | None = None

    @property
    def available(self) -> int:
        return sum(
            1 for s in (self.declared_tier, self.embedded, self.snapshot) if s is not None
        )


def _within_paid_period(end: Any, now: datetime) -> bool:
    end_at = parse_timestamp(end)
    if end_at is None:
        if end is not None:
            logger.warning("Unparseable subscription end date %r", end)
        return False
    return now < end_at


def declared_supports_elevated(declared_tier: str | None) -> bool:
    return declared_tier == AccountTier.ELEVATED.value


def embedded_supports_elevated(
    embedded: EmbeddedSubscription | None, now: datetime
) -> bool:
    if embedded is None:
        return False
    if embedded.status in _ENTITLED_STATUSES:
        return True
    if embedded.status == "canceled" and _within_paid_period(embedded.end_date, now):
        return True
    return manual_grant_supports_elevated(embedded)


def manual_grant_supports_elevated(embedded: EmbeddedSubscription | None) -> bool:
    """Manually granted subscriptions count regardless of expiry."""
    if embedded is None or not embedded.subscription_ref:
        return False
    return (
        embedded.subscription_ref.startswith(settings.manual_grant_prefix)
        and embedded.status != "none"
    )


def snapshot_supports_elevated(snapshot: ProviderSnapshot | None, now: datetime) -> bool:
    if snapshot is None:
        return False
    status = snapshot.status.lower()
    if status in _ENTITLED_STATUSES:
        return True
    return status == "canceled" and _within_paid_period(snapshot.current_period_end, now)


def resolve_tier_from_signals(signals: TierSignals, now: datetime | None = None) -> AccountTier:
    """Elevated if any signal supports elevated, otherwise standard."""
    if now is None:
        now = datetime.now(UTC)
    if (
        declared_supports_elevated(signals.declared_tier)
        or embedded_supports_elevated(signals.embedded, now)
        or snapshot_supports_elevated(signals.snapshot, now)
    ):
        return AccountTier.ELEVATED
    return AccountTier.STANDARD


def signals_from_records(
    account: Account | None, snapshot: SubscriptionSnapshot | None
) -> TierSignals:
    declared = None
    embedded = None
    if account is not None:
        declared = (account.declared_tier or AccountTier.STANDARD.value).lower()
        if account.subscription:
            embedded = EmbeddedSubscription.from_document(account.subscription)
    provider = None
    if snapshot is not None:
        provider = ProviderSnapshot(
            status=snapshot.status or "none",
            current_period_end=snapshot.current_period_end,
        )
    return TierSignals(declared_tier=declared, embedded=embedded, snapshot=provider)


async def read_signals(db: AsyncSession, account_id: uuid.UUID) -> TierSignals:
    """Read every signal for one account. A failed read leaves that signal unset."""
    account = None
    snapshot = None
    try:
        result = await db.execute(select(Account).where(Account.account_id == account_id))
        account = result.scalar_one_or_none()
    except Exception:
        logger.exception("Account lookup failed for %s", account_id)
    try:
        result = await db.execute(
            select(SubscriptionSnapshot).where(SubscriptionSnapshot.account_id == account_id)
        )
        snapshot = result.scalar_one_or_none()
    except Exception:
        logger.exception("Subscription snapshot lookup failed for %s", account_id)
    return signals_from_records(account, snapshot)


async def resolve_tier(
    db: AsyncSession, account_id: uuid.UUID, now: datetime | None = None
) -> AccountTier:
    """Current retention tier for an account. Never raises."""
    try:
        signals = await read_signals(db, account_id)
        tier = resolve_tier_from_signals(signals, now)
    except Exception:
        logger.exception("Tier resolution failed for %s, using standard", account_id)
        return AccountTier.STANDARD

    if signals.available == 0:
        logger.info("No tier signals for account %s, using standard", account_id)
    logger.debug(
        "Tier for %s: %s (declared=%s embedded=%s snapshot=%s)",
        account_id, tier.value, signals.declared_tier,
        signals.embedded.status if signals.embedded else None,
        signals.snapshot.status if signals.snapshot else None,
    )
    return tier


async def resolve_tiers(
    db: AsyncSession,
    account_ids: list[uuid.UUID],
    now: datetime | None = None,
) -> dict[uuid.UUID, AccountTier]:
    """Resolve many accounts with two queries. Never raises.

    Accounts whose records cannot be read resolve to standard.
    """
    unique_ids = list(dict.fromkeys(account_ids))
    if not unique_ids:
        return {}

    accounts: dict[uuid.UUID, Account] = {}
    snapshots: dict[uuid.UUID, SubscriptionSnapshot] = {}
    try:
        result = await db.execute(select(Account).where(Account.account_id.in_(unique_ids)))
        accounts = {a.account_id: a for a in result.scalars().all()}
    except Exception:
        logger.exception("Batch account lookup failed for %d accounts", len(unique_ids))
    try:
        result = await db.execute(
            select(SubscriptionSnapshot).where(SubscriptionSnapshot.account_id.in_(unique_ids))
        )
        snapshots = {s.account_id: s for s in result.scalars().all()}
    except Exception:
        logger.exception("Batch snapshot lookup failed for %d accounts", len(unique_ids))

    return {
        account_id: resolve_tier_from_signals(
            signals_from_records(accounts.get(account_id), snapshots.get(account_id)), now
        )
        for account_id in unique_ids
    }
