"""
Timezone helpers.

DateTime columns hold naive UTC. Everything above the repository layer works
with aware datetimes, so values are converted on the way in and out.
"""

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def naive_utc_now() -> datetime:
    """Current UTC time in the naive form stored in DateTime columns"""
    return utc_now().replace(tzinfo=None)


def to_utc(dt: datetime) -> datetime:
    """Aware UTC datetime. Naive input is taken to be UTC already."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_naive_utc(dt: datetime) -> datetime:
    """Naive UTC datetime for writing to a DateTime column"""
    return to_utc(dt).replace(tzinfo=None)


def optional_to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    return to_utc(dt) if dt is not None else None


def optional_to_naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    return to_naive_utc(dt) if dt is not None else None


def in_zone(dt: datetime, zone: ZoneInfo) -> datetime:
    """
    Express a datetime in the given zone.

    A naive datetime is taken as wall-clock time in ``zone``; an aware one is
    converted into it.
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=zone)
    return dt.astimezone(zone)
