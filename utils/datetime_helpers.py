"""
Datetime helpers. Deal timestamps are stored as timezone-naive UTC (DateTime(timezone=False)).
"""

from datetime import datetime, timedelta, timezone


def get_naive_utc_now() -> datetime:
    """Current UTC time without timezone info"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def hours_ago(hours: float) -> datetime:
    """Naive UTC cutoff ``hours`` before now, for comparing against stored timestamps"""
    return get_naive_utc_now() - timedelta(hours=hours)
