"""Offer model. owner_id is the buyer who made the offer."""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Enum, Numeric, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from cardmarket.database import Base, UTCDateTime, utcnow
from cardmarket.models.lifecycle import LifecycleFieldsMixin


class OfferStatus(enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"
    ARCHIVED = "archived"


class Offer(LifecycleFieldsMixin, Base):
    __tablename__ = "offers"

    offer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    listing_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    status: Mapped[OfferStatus] = mapped_column(
        Enum(OfferStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=OfferStatus.PENDING,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
