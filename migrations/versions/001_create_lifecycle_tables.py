"""Create accounts, marketplace documents and their side records.

Revision ID: 001
Revises: None
Create Date: 2026-10-17
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Enum types used by several tables, created explicitly before any table
listing_status = postgresql.ENUM(
    "active", "archived", "sold", "deleted", name="listingstatus", create_type=False,
)
wanted_post_status = postgresql.ENUM(
    "active", "archived", "fulfilled", name="wantedpoststatus", create_type=False,
)
offer_status = postgresql.ENUM(
    "pending", "accepted", "declined", "expired", "archived",
    name="offerstatus", create_type=False,
)
archival_reason = postgresql.ENUM(
    "tier_duration_exceeded", "moderation",
    name="archivalreason", create_type=False,
)
document_kind = postgresql.ENUM(
    "listing", "wanted_post", "offer", name="documentkind", create_type=False,
)

_ENUMS = (listing_status, wanted_post_status, offer_status, archival_reason, document_kind)


def _lifecycle_columns() -> list[sa.Column]:
    return [
        sa.Column("owner_id", sa.Uuid(), nullable=False, index=True),
        sa.Column("short_id", sa.String(16), unique=True, nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delete_at", sa.DateTime(timezone=True), nullable=True, index=True),
        sa.Column("archival_reason", archival_reason, nullable=True),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in _ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "accounts",
        sa.Column("account_id", sa.Uuid(), primary_key=True),
        sa.Column("email", sa.String(320), unique=True, nullable=False),
        sa.Column("declared_tier", sa.String(32), nullable=False, server_default="standard"),
        sa.Column("subscription", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "subscription_snapshots",
        sa.Column(
            "account_id", sa.Uuid(),
            sa.ForeignKey("accounts.account_id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("status", sa.String(32), nullable=False, server_default="none"),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "listings",
        sa.Column("listing_id", sa.Uuid(), primary_key=True),
        sa.Column("title", sa.String(200), nullable=False, server_default=""),
        sa.Column("status", listing_status, nullable=False, server_default="active", index=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at_legacy", postgresql.JSONB(), nullable=True),
        sa.Column("original_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("previous_status", listing_status, nullable=True),
        sa.Column("previous_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("restored_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("restored_reason", sa.String(64), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        *_lifecycle_columns(),
    )
    op.create_index("ix_listings_owner_status", "listings", ["owner_id", "status"])

    op.create_table(
        "wanted_posts",
        sa.Column("wanted_post_id", sa.Uuid(), primary_key=True),
        sa.Column("title", sa.String(200), nullable=False, server_default=""),
        sa.Column("status", wanted_post_status, nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        *_lifecycle_columns(),
    )

    op.create_table(
        "offers",
        sa.Column("offer_id", sa.Uuid(), primary_key=True),
        sa.Column("listing_id", sa.Uuid(), nullable=True, index=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False, server_default="0.00"),
        sa.Column("status", offer_status, nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        *_lifecycle_columns(),
    )

    op.create_table(
        "short_id_mappings",
        sa.Column("short_id", sa.String(16), primary_key=True),
        sa.Column("kind", document_kind, nullable=False),
        sa.Column("document_id", sa.Uuid(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "owner_listing_index",
        sa.Column("owner_id", sa.Uuid(), primary_key=True),
        sa.Column("document_id", sa.Uuid(), primary_key=True),
        sa.Column("kind", document_kind, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("owner_listing_index")
    op.drop_table("short_id_mappings")
    op.drop_table("offers")
    op.drop_table("wanted_posts")
    op.drop_index("ix_listings_owner_status", table_name="listings")
    op.drop_table("listings")
    op.drop_table("subscription_snapshots")
    op.drop_table("accounts")
    bind = op.get_bind()
    for enum_type in reversed(_ENUMS):
        enum_type.drop(bind, checkfirst=True)
