"""Tests for tier resolution across the declared, embedded and provider signals."""

import itertools
import uuid
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from cardmarket.models.account import AccountTier
from cardmarket.services.tiers import (
    EmbeddedSubscription,
    ProviderSnapshot,
    TierSignals,
    resolve_tier,
    resolve_tier_from_signals,
    resolve_tiers,
)
from tests.conftest import T0, make_account

ELEVATED_DECLARED = "elevated"
ACTIVE_EMBEDDED = EmbeddedSubscription(status="active", subscription_ref="sub_123")
ACTIVE_SNAPSHOT = ProviderSnapshot(status="active", current_period_end=T0 + timedelta(days=20))


@pytest.mark.parametrize(
    "declared_elevated,embedded_active,snapshot_active",
    list(itertools.product([False, True], repeat=3)),
)
def test_most_generous_signal_wins(
    declared_elevated: bool, embedded_active: bool, snapshot_active: bool
) -> None:
    signals = TierSignals(
        declared_tier=ELEVATED_DECLARED if declared_elevated else "standard",
        embedded=ACTIVE_EMBEDDED if embedded_active else EmbeddedSubscription(status="none"),
        snapshot=ACTIVE_SNAPSHOT if snapshot_active else ProviderSnapshot(status="none"),
    )
    expected = (
        AccountTier.ELEVATED
        if declared_elevated or embedded_active or snapshot_active
        else AccountTier.STANDARD
    )
    assert resolve_tier_from_signals(signals, now=T0) == expected


def test_no_signals_is_standard() -> None:
    assert resolve_tier_from_signals(TierSignals(), now=T0) == AccountTier.STANDARD


def test_trialing_counts_as_elevated() -> None:
    signals = TierSignals(snapshot=ProviderSnapshot(status="trialing"))
    assert resolve_tier_from_signals(signals, now=T0) == AccountTier.ELEVATED


def test_canceled_within_paid_period_is_elevated() -> None:
    embedded = EmbeddedSubscription(status="canceled", end_date=(T0 + timedelta(days=3)).isoformat())
    assert resolve_tier_from_signals(TierSignals(embedded=embedded), now=T0) == AccountTier.ELEVATED


def test_canceled_after_paid_period_is_standard() -> None:
    embedded = EmbeddedSubscription(status="canceled", end_date=(T0 - timedelta(days=1)).isoformat())
    snapshot = ProviderSnapshot(status="canceled", current_period_end=T0 - timedelta(seconds=1))
    signals = TierSignals(declared_tier="standard", embedded=embedded, snapshot=snapshot)
    assert resolve_tier_from_signals(signals, now=T0) == AccountTier.STANDARD


def test_canceled_snapshot_within_period_is_elevated() -> None:
    snapshot = ProviderSnapshot(status="canceled", current_period_end=T0 + timedelta(hours=1))
    assert resolve_tier_from_signals(TierSignals(snapshot=snapshot), now=T0) == AccountTier.ELEVATED


def test_manual_grant_counts_even_when_expired() -> None:
    embedded = EmbeddedSubscription(
        status="canceled",
        subscription_ref="admin_comp_2024",
        end_date=(T0 - timedelta(days=365)).isoformat(),
    )
    assert resolve_tier_from_signals(TierSignals(embedded=embedded), now=T0) == AccountTier.ELEVATED


def test_manual_grant_with_status_none_is_standard() -> None:
    embedded = EmbeddedSubscription(status="none", subscription_ref="admin_comp_2024")
    assert resolve_tier_from_signals(TierSignals(embedded=embedded), now=T0) == AccountTier.STANDARD


def test_unparseable_end_date_does_not_grant() -> None:
    embedded = EmbeddedSubscription(status="canceled", end_date="next tuesday")
    assert resolve_tier_from_signals(TierSignals(embedded=embedded), now=T0) == AccountTier.STANDARD


def test_embedded_from_document_normalizes_status() -> None:
    embedded = EmbeddedSubscription.from_document({"status": "ACTIVE", "subscription_ref": "sub_1"})
    assert embedded.status == "active"
    assert EmbeddedSubscription.from_document({}).status == "none"


# --- Store-backed resolution ---

@pytest.mark.asyncio
async def test_resolve_tier_from_stale_declared_field(db_session: AsyncSession) -> None:
    """Declared tier lags behind: the provider snapshot alone is enough."""
    account = await make_account(
        db_session,
        declared_tier="standard",
        subscription={"status": "none"},
        snapshot_status="active",
        current_period_end=T0 + timedelta(days=30),
    )
    assert await resolve_tier(db_session, account.account_id, now=T0) == AccountTier.ELEVATED


@pytest.mark.asyncio
async def test_resolve_tier_from_embedded_subscription(db_session: AsyncSession) -> None:
    account = await make_account(
        db_session, subscription={"status": "active", "subscription_ref": "sub_42"},
    )
    assert await resolve_tier(db_session, account.account_id, now=T0) == AccountTier.ELEVATED


@pytest.mark.asyncio
async def test_resolve_tier_unknown_account_is_standard(db_session: AsyncSession) -> None:
    assert await resolve_tier(db_session, uuid.uuid4(), now=T0) == AccountTier.STANDARD


@pytest.mark.asyncio
async def test_resolve_tier_lookup_failure_is_standard(
    db_session: AsyncSession, monkeypatch: pytest.MonkeyPatch
) -> None:
    account = await make_account(db_session, declared_tier="elevated")

    async def failing_execute(*args, **kwargs):  # type: ignore[no-untyped-def]
        raise OperationalError("SELECT", {}, Exception("connection reset"))

    monkeypatch.setattr(db_session, "execute", failing_execute)
    assert await resolve_tier(db_session, account.account_id, now=T0) == AccountTier.STANDARD


@pytest.mark.asyncio
async def test_resolve_tiers_batch(db_session: AsyncSession) -> None:
    elevated = await make_account(db_session, declared_tier="elevated")
    standard = await make_account(db_session)
    missing = uuid.uuid4()

    tiers = await resolve_tiers(
        db_session, [elevated.account_id, standard.account_id, elevated.account_id, missing], now=T0,
    )

    assert tiers == {
        elevated.account_id: AccountTier.ELEVATED,
        standard.account_id: AccountTier.STANDARD,
        missing: AccountTier.STANDARD,
    }


@pytest.mark.asyncio
async def test_resolve_tiers_empty(db_session: AsyncSession) -> None:
    assert await resolve_tiers(db_session, []) == {}
