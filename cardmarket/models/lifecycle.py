"""Lifecycle columns shared by every document that can expire and be swept."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Enum, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from cardmarket.database import UTCDateTime


class ArchivalReason(enum.Enum):
    TIER_DURATION_EXCEEDED = "tier_duration_exceeded"
    MODERATION = "moderation"


class DocumentKind(enum.Enum):
    LISTING = "listing"
    WANTED_POST = "wanted_post"
    OFFER = "offer"


class LifecycleFieldsMixin:
    """Archival and TTL columns.

    delete_at is the TTL field: set only while archived for tier-duration
    expiry, and always archive_grace_days after archived_at.
    """

    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    short_id: Mapped[str | None] = mapped_column(String(16), unique=True, nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    delete_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True, index=True)
    archival_reason: Mapped[ArchivalReason | None] = mapped_column(
        Enum(ArchivalReason, values_callable=lambda x: [e.value for e in x]),
        nullable=True,
    )
