"""Recency window and ordering for harvested MRU records."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable, Iterator, Optional

from .mru_decoder import RecentFileRecord


def cutoff(window_days: int, now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now - timedelta(days=window_days)


def is_recent(record: RecentFileRecord, window_days: int, now: Optional[datetime] = None) -> bool:
    # Strictly newer than the cutoff: an entry exactly window_days old is stale.
    return record.last_access > cutoff(window_days, now)


def filter_recent(
    records: Iterable[RecentFileRecord],
    window_days: int,
    now: Optional[datetime] = None,
) -> Iterator[RecentFileRecord]:
    limit = cutoff(window_days, now)
    for record in records:
        if record.last_access > limit:
            yield record


def order_by_recency(records: Iterable[RecentFileRecord]) -> list[RecentFileRecord]:
    """Most recent first; equal timestamps keep their encounter order."""
    return sorted(records, key=lambda record: record.last_access, reverse=True)
