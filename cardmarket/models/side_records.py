"""Denormalized lookup records that must be removed along with their document."""

import uuid
from datetime import datetime

from sqlalchemy import Enum, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from cardmarket.database import Base, UTCDateTime, utcnow
from cardmarket.models.lifecycle import DocumentKind

_kind_enum = Enum(DocumentKind, values_callable=lambda x: [e.value for e in x])


class ShortIdMapping(Base):
    """Short public id -> document, used by share links."""

    __tablename__ = "short_id_mappings"

    short_id: Mapped[str] = mapped_column(String(16), primary_key=True)
    kind: Mapped[DocumentKind] = mapped_column(_kind_enum, nullable=False)
    document_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )


class OwnerListingIndex(Base):
    """Per-owner index of documents, read by the owner's dashboard."""

    __tablename__ = "owner_listing_index"

    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    document_id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    kind: Mapped[DocumentKind] = mapped_column(_kind_enum, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
