"""Pydantic v2 schemas for the lifecycle entry points."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _enum_value(v: object) -> object:
    if hasattr(v, "value"):
        return v.value
    return v


class ArchiveCheckResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    listing_id: uuid.UUID
    status: str
    expires_at: datetime | None = None
    archived_at: datetime | None = None
    delete_at: datetime | None = None

    @field_validator("status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> object:
        return _enum_value(v)


class ArchivalSweepResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    success: bool
    scanned: int
    archived: int
    already_archived: int
    batches_committed: int
    timed_out: bool
    failure: str | None = None
    error: str | None = None

    @field_validator("failure", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> object:
        return _enum_value(v)


class KindCountsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    found: int
    deleted: int
    errored: int


class SweepResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    success: bool
    found: int
    deleted: int
    errored: int
    skipped: int
    backfilled: int = 0
    side_record_errors: int
    batches_committed: int
    max_overdue_seconds: float
    timed_out: bool
    by_kind: dict[str, KindCountsResponse] = {}
    failure: str | None = None
    error: str | None = None

    @field_validator("failure", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> object:
        return _enum_value(v)


class RestorationErrorResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    listing_id: uuid.UUID
    error: str


class RestorationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    account_id: uuid.UUID
    success: bool
    tier: str
    skipped: bool
    restored_count: int
    total_scanned: int
    restored_ids: list[uuid.UUID] = []
    errors: list[RestorationErrorResponse] = []
    failure: str | None = None
    error: str | None = None

    @field_validator("tier", "failure", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> object:
        return _enum_value(v)


class SubscriptionSnapshotIn(BaseModel):
    """Fresh provider snapshot delivered with a tier-change notification."""

    status: str = Field(..., pattern=r"^(active|trialing|canceled|none)$")
    current_period_end: datetime | None = None


class ListingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    listing_id: uuid.UUID
    owner_id: uuid.UUID
    short_id: str | None
    title: str
    status: str
    created_at: datetime
    expires_at: datetime | None
    archived_at: datetime | None
    delete_at: datetime | None
    archival_reason: str | None

    @field_validator("status", "archival_reason", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> object:
        return _enum_value(v)
