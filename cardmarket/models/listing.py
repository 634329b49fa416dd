"""Card listing SQLAlchemy model."""

import enum
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import Enum, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from cardmarket.database import Base, JSONDocument, UTCDateTime, utcnow
from cardmarket.models.lifecycle import LifecycleFieldsMixin


class ListingStatus(enum.Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    SOLD = "sold"
    DELETED = "deleted"  # Terminal; the row is physically removed by the sweep


_status_enum = Enum(ListingStatus, values_callable=lambda x: [e.value for e in x])


class Listing(LifecycleFieldsMixin, Base):
    __tablename__ = "listings"
    __table_args__ = (
        Index("ix_listings_owner_status", "owner_id", "status"),
    )

    listing_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    status: Mapped[ListingStatus] = mapped_column(
        _status_enum, nullable=False, default=ListingStatus.ACTIVE, index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    # Authoritative expiration: explicit override or the value computed at creation.
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    # Raw expiration carried over from imported documents (epoch, ISO string or
    # provider timestamp object). Only consulted when expires_at is unset.
    expires_at_legacy: Mapped[Any | None] = mapped_column(JSONDocument, nullable=True)

    # Snapshot taken at archival so a restoration can put things back exactly
    original_created_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    previous_status: Mapped[ListingStatus | None] = mapped_column(_status_enum, nullable=True)
    previous_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    restored_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    restored_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    @property
    def explicit_expiration(self) -> Any | None:
        """Stored expiration override in whatever form it was persisted."""
        if self.expires_at is not None:
            return self.expires_at
        return self.expires_at_legacy
