"""Time helpers shared by the ingestion and analytics services.

All timestamps are stored as naive UTC datetimes.
"""

from collections import OrderedDict
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, TypeVar

T = TypeVar("T")

PERIOD_DAYS: Dict[str, Optional[int]] = {
    "day": 1,
    "week": 7,
    "month": 30,
    "quarter": 90,
    "year": 365,
    "all": None,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def period_start(period: str, now: datetime) -> Optional[datetime]:
    """Return the inclusive start of ``period`` ending at ``now``, or None for 'all'."""
    if period not in PERIOD_DAYS:
        raise ValueError(f"Unknown period '{period}'. Expected one of: {', '.join(PERIOD_DAYS)}")
    days = PERIOD_DAYS[period]
    if days is None:
        return None
    return now - timedelta(days=days)


def day_range(end: date, days: int) -> List[date]:
    """The ``days`` calendar days ending at ``end``, oldest first."""
    return [end - timedelta(days=offset) for offset in range(days - 1, -1, -1)]


def bucket_by_day(
    items: Iterable[T],
    timestamp: Callable[[T], datetime],
) -> "OrderedDict[date, List[T]]":
    """Group items by the calendar day of their timestamp, in date order."""
    buckets: Dict[date, List[T]] = {}
    for item in items:
        ts = timestamp(item)
        if ts is None:
            continue
        buckets.setdefault(ts.date(), []).append(item)
    return OrderedDict(sorted(buckets.items()))


def zero_filled_counts(counts: Dict[date, int], end: date, days: int) -> List[dict]:
    """Daily timeline with an entry for every day, including the empty ones."""
    return [
        {
            "date": day.isoformat(),
            "formatted_date": f"{day.strftime('%b')} {day.day}",
            "views": counts.get(day, 0),
        }
        for day in day_range(end, days)
    ]


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize an aware datetime to the naive UTC form used in storage."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
