"""Account and provider subscription snapshot models.

Both are read-only from the lifecycle engine's point of view, apart from
snapshot upserts on the tier-change notifier.
"""

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from cardmarket.database import Base, JSONDocument, UTCDateTime, utcnow


class AccountTier(enum.Enum):
    """Retention class an account is entitled to."""

    STANDARD = "standard"
    ELEVATED = "elevated"


class Account(Base):
    __tablename__ = "accounts"

    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    email: Mapped[str] = mapped_column(
        String(320), unique=True, nullable=False
    )
    # Denormalized tier ("standard" / "elevated"); may lag the subscription
    declared_tier: Mapped[str] = mapped_column(
        String(32), nullable=False, default=AccountTier.STANDARD.value
    )
    # Embedded subscription sub-record: {"status", "subscription_ref", "end_date"}
    subscription: Mapped[dict[str, Any] | None] = mapped_column(
        JSONDocument, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )


class SubscriptionSnapshot(Base):
    """Payment provider view of an account's subscription, synced asynchronously."""

    __tablename__ = "subscription_snapshots"

    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.account_id", ondelete="CASCADE"), primary_key=True
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="none")
    current_period_end: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    synced_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )
