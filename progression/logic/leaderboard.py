"""
Leaderboard period boundaries and rank ordering

Pure functions of "now" and the entries of one partition.
"""
from datetime import datetime, date, time, timedelta, timezone, tzinfo
from typing import Iterable, List, Tuple
import logging

from progression.dynamo import ensure_aware, resolve_timezone
from progression.schemas import LEADERBOARD_PERIODS, LeaderboardEntry

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
FAR_FUTURE = datetime(9999, 12, 31, 23, 59, 59, 999999, tzinfo=timezone.utc)

_ONE_MICROSECOND = timedelta(microseconds=1)


def _local_midnight(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time(0), tzinfo=tz).astimezone(timezone.utc)


def _first_of_next_month(day: date) -> date:
    if day.month == 12:
        return date(day.year + 1, 1, 1)
    return date(day.year, day.month + 1, 1)


def period_bounds(
    period: str,
    now: datetime,
    tz_name: str = "UTC",
    week_start: int = 6
) -> Tuple[datetime, datetime]:
    """
    Canonical [start, end] of the period containing `now`.

    Boundaries fall on local midnight in `tz_name` and are returned in UTC.
    `end` is the last microsecond before the next period starts.

    Args:
        period: daily, weekly, monthly or all_time
        now: Evaluation time
        tz_name: IANA timezone that defines "midnight"
        week_start: First day of the week, 0=Monday ... 6=Sunday

    Examples:
        >>> period_bounds("weekly", datetime(2025, 11, 19, 15, tzinfo=timezone.utc))
        (datetime(2025, 11, 16, 0, 0, tzinfo=utc), datetime(2025, 11, 22, 23, 59, 59, 999999, tzinfo=utc))
    """
    if period not in LEADERBOARD_PERIODS:
        raise ValueError(f"period must be one of {LEADERBOARD_PERIODS}, got: {period}")
    if not 0 <= week_start <= 6:
        raise ValueError(f"week_start must be between 0 and 6, got: {week_start}")

    if period == "all_time":
        return EPOCH, FAR_FUTURE

    tz = resolve_timezone(tz_name)
    today = ensure_aware(now).astimezone(tz).date()

    if period == "daily":
        start_day, next_day = today, today + timedelta(days=1)
    elif period == "weekly":
        start_day = today - timedelta(days=(today.weekday() - week_start) % 7)
        next_day = start_day + timedelta(days=7)
    else:
        start_day = today.replace(day=1)
        next_day = _first_of_next_month(today)

    start = _local_midnight(start_day, tz)
    end = _local_midnight(next_day, tz) - _ONE_MICROSECOND
    return start, end


def ranking_key(entry: LeaderboardEntry) -> Tuple[int, datetime, str]:
    """
    Declared comparator: xp descending, then earliest created_at, then learner_id.

    The learner that reached a score first keeps the better rank on ties.
    """
    return (-entry.xp, ensure_aware(entry.created_at), entry.learner_id)


def rank_entries(entries: Iterable[LeaderboardEntry]) -> List[Tuple[LeaderboardEntry, int]]:
    """
    Dense 1-based ranks for a whole partition.

    Returns:
        List of (entry, new_rank) in rank order; ranks are exactly 1..N
    """
    ordered = sorted(entries, key=ranking_key)
    return [(entry, index + 1) for index, entry in enumerate(ordered)]


def changed_ranks(entries: Iterable[LeaderboardEntry]) -> List[Tuple[LeaderboardEntry, int]]:
    """Only the entries whose stored rank differs from the computed one"""
    return [(entry, rank) for entry, rank in rank_entries(entries) if entry.rank != rank]
