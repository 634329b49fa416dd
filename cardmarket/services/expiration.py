"""Expiration calculator: when does a listing stop being active?

An explicit, parseable expiration always wins over the tier duration: it is
either a manual extension or the value computed at creation, and a later tier
change never moves it.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from cardmarket.config import settings
from cardmarket.models.account import AccountTier

logger = logging.getLogger(__name__)

# Epoch values above this are taken to be milliseconds (year ~2286 in seconds)
_EPOCH_MILLIS_THRESHOLD = 10_000_000_000


@dataclass(frozen=True)
class TierPolicy:
    """Static retention policy: tier name -> listing duration in hours."""

    durations_hours: dict[str, int]
    grace_days: int

    @classmethod
    def from_settings(cls) -> "TierPolicy":
        return cls(
            durations_hours=settings.tier_durations,
            grace_days=settings.archive_grace_days,
        )

    def duration(self, tier: AccountTier) -> timedelta:
        hours = self.durations_hours.get(tier.value)
        if hours is None:
            hours = self.durations_hours[AccountTier.STANDARD.value]
        return timedelta(hours=hours)

    def grace_window(self) -> timedelta:
        return timedelta(days=self.grace_days)


def _from_epoch(value: float) -> datetime:
    if abs(value) >= _EPOCH_MILLIS_THRESHOLD:
        value = value / 1000.0
    return datetime.fromtimestamp(value, tz=UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a stored timestamp in any of the legacy formats.

    Accepts datetimes, epoch seconds or milliseconds, ISO-8601 strings and
    provider timestamp objects ({"seconds", "nanoseconds"}, with or without
    a leading underscore). Returns None instead of raising.
    """
    if value is None or isinstance(value, bool):
        return None

    try:
        if isinstance(value, datetime):
            if value.tzinfo is None:
                return value.replace(tzinfo=UTC)
            return value.astimezone(UTC)

        if isinstance(value, (int, float)):
            return _from_epoch(float(value))

        if isinstance(value, str):
            text = value.strip()
            if not text:
                return None
            try:
                return _from_epoch(float(text))
            except ValueError:
                pass
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            parsed = datetime.fromisoformat(text)
            if parsed.tzinfo is None:
                return parsed.replace(tzinfo=UTC)
            return parsed.astimezone(UTC)

        if isinstance(value, dict):
            seconds = value.get("seconds", value.get("_seconds"))
            if seconds is None:
                return None
            nanos = value.get("nanoseconds", value.get("_nanoseconds")) or 0
            return datetime.fromtimestamp(int(seconds), tz=UTC) + timedelta(
                microseconds=int(nanos) // 1000
            )
    except (ValueError, TypeError, OverflowError, OSError):
        return None

    return None


def compute_expiration(
    created_at: datetime,
    tier: AccountTier,
    explicit_expires_at: Any | None = None,
    policy: TierPolicy | None = None,
) -> datetime:
    """Authoritative expiration instant for a listing."""
    if policy is None:
        policy = TierPolicy.from_settings()

    if explicit_expires_at is not None:
        parsed = parse_timestamp(explicit_expires_at)
        if parsed is not None:
            return parsed
        logger.warning(
            "Unparseable expiration %r, falling back to %s tier duration",
            explicit_expires_at, tier.value,
        )

    base = parse_timestamp(created_at)
    if base is None:
        logger.warning("Unparseable created_at %r, using current time", created_at)
        base = datetime.now(UTC)
    return base + policy.duration(tier)
