"""Wanted post model. Expires and is swept exactly like a listing."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Enum, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from cardmarket.database import Base, UTCDateTime, utcnow
from cardmarket.models.lifecycle import LifecycleFieldsMixin


class WantedPostStatus(enum.Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    FULFILLED = "fulfilled"


class WantedPost(LifecycleFieldsMixin, Base):
    __tablename__ = "wanted_posts"

    wanted_post_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    status: Mapped[WantedPostStatus] = mapped_column(
        Enum(WantedPostStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=WantedPostStatus.ACTIVE,
    )
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
