"""
Leaderboard Service

Each XP event is added to the current daily, weekly, monthly and all-time
partitions (global, plus the language partition when one is given) and the
touched partitions are re-ranked under a per-partition lease.
"""
from datetime import datetime
from typing import Dict, Iterable, List, Optional
import logging
import time
import uuid

from progression.config import Settings, get_settings
from progression.dynamo import ALL_LANGUAGES, board_pk, ensure_aware, utcnow
from progression.exceptions import InvalidInput, LeaderboardBusy
from progression.logic.leaderboard import changed_ranks, period_bounds, ranking_key
from progression.schemas import LEADERBOARD_PERIODS, LeaderboardEntry
from progression.services.leaderboard_repository import LeaderboardRepository

logger = logging.getLogger(__name__)

MAX_LEADERBOARD_LIMIT = 1000


def check_language_id(language_id: Optional[str]) -> Optional[str]:
    """Language partitions share a key space with the global one"""
    if language_id is None:
        return None
    if not isinstance(language_id, str) or not language_id.strip():
        raise InvalidInput(f"Invalid language_id: {language_id!r}")
    if language_id.upper() == ALL_LANGUAGES or '#' in language_id:
        raise InvalidInput(f"language_id {language_id!r} is reserved")
    return language_id


class LeaderboardService:
    def __init__(self, repository: LeaderboardRepository, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.repository = repository
        self.tz_name = settings.LEADERBOARD_TIMEZONE
        self.week_start = settings.LEADERBOARD_WEEK_START
        self.default_limit = settings.LEADERBOARD_DEFAULT_LIMIT
        self.lock_ttl_seconds = settings.RANK_LOCK_TTL_SECONDS
        self.lock_attempts = settings.RANK_LOCK_ATTEMPTS
        self.lock_backoff_seconds = settings.RANK_LOCK_BACKOFF_SECONDS

    def bounds(self, period: str, now: Optional[datetime] = None):
        if period not in LEADERBOARD_PERIODS:
            raise InvalidInput(f"period must be one of {LEADERBOARD_PERIODS}, got: {period}")
        return period_bounds(period, now or utcnow(), self.tz_name, self.week_start)

    def record_xp(
        self,
        learner_id: str,
        xp_earned: int,
        language_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> None:
        """
        Add XP to every current partition of the learner and re-rank them.

        Non-positive amounts (purchases) are ignored. A partition whose lock
        is busy is left for the next event or the batch job.
        """
        if not learner_id:
            raise InvalidInput("learner_id is required")
        language_id = check_language_id(language_id)
        if xp_earned <= 0:
            logger.debug(f"Ignoring non-positive leaderboard XP {xp_earned} for learner {learner_id}")
            return

        now = ensure_aware(now) if now else utcnow()
        languages = [None] if not language_id else [None, language_id]

        for period in LEADERBOARD_PERIODS:
            start, end = self.bounds(period, now)
            for language in languages:
                self.repository.upsert(learner_id, period, start, end, language, xp_earned, now)
                try:
                    self.recalculate_ranks(period, start, language)
                except LeaderboardBusy as e:
                    logger.warning(f"Skipped re-ranking: {e.detail}")

        logger.info(f"Recorded {xp_earned} leaderboard XP for learner {learner_id} (language={language_id})")

    def _acquire(self, pk: str, owner: str) -> None:
        for attempt in range(self.lock_attempts):
            if self.repository.acquire_lock(pk, owner, int(time.time()), self.lock_ttl_seconds):
                return
            time.sleep(self.lock_backoff_seconds * (attempt + 1))
        raise LeaderboardBusy(f"Leaderboard {pk} is being re-ranked by another writer")

    def recalculate_ranks(
        self,
        period: str,
        period_start: datetime,
        language_id: Optional[str] = None
    ) -> int:
        """
        Re-rank one partition: ranks 1..N by (xp desc, created_at, learner_id).

        Only changed ranks are written.

        Returns:
            Number of entries whose rank changed

        Raises:
            LeaderboardBusy: lock not obtained after the configured attempts
        """
        if period not in LEADERBOARD_PERIODS:
            raise InvalidInput(f"period must be one of {LEADERBOARD_PERIODS}, got: {period}")
        check_language_id(language_id)

        pk = board_pk(period, period_start, language_id)
        owner = str(uuid.uuid4())
        self._acquire(pk, owner)
        try:
            changes = changed_ranks(self.repository.list_partition(pk))
            for entry, rank in changes:
                self.repository.set_rank(pk, entry.learner_id, rank)
        finally:
            self.repository.release_lock(pk, owner)

        if changes:
            logger.debug(f"Re-ranked {pk}: {len(changes)} rank(s) changed")
        return len(changes)

    def recalculate_current(
        self,
        language_ids: Iterable[str] = (),
        now: Optional[datetime] = None
    ) -> Dict[str, int]:
        """
        Batch path: re-rank every current partition.

        Returns:
            {partition key: changed ranks}
        """
        now = ensure_aware(now) if now else utcnow()
        languages: List[Optional[str]] = [None] + [check_language_id(lang) for lang in language_ids if lang]

        results = {}
        for period in LEADERBOARD_PERIODS:
            start, _end = self.bounds(period, now)
            for language in languages:
                results[board_pk(period, start, language)] = self.recalculate_ranks(period, start, language)

        logger.info(f"Re-ranked {len(results)} partitions, {sum(results.values())} rank(s) changed")
        return results

    def get_leaderboard(
        self,
        period: str,
        language_id: Optional[str] = None,
        limit: Optional[int] = None,
        now: Optional[datetime] = None
    ) -> List[LeaderboardEntry]:
        """Current partition ordered by rank, entries not ranked yet last"""
        limit = limit if limit is not None else self.default_limit
        if not 1 <= limit <= MAX_LEADERBOARD_LIMIT:
            raise InvalidInput(f"limit must be between 1 and {MAX_LEADERBOARD_LIMIT}, got: {limit}")
        check_language_id(language_id)

        start, _end = self.bounds(period, now)
        entries = self.repository.list_partition(board_pk(period, start, language_id))
        entries.sort(key=lambda entry: (entry.rank == 0, entry.rank, ranking_key(entry)))
        return entries[:limit]

    def get_learner_position(
        self,
        learner_id: str,
        period: str,
        language_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Optional[LeaderboardEntry]:
        """The learner's entry in the current partition, None if no XP yet"""
        check_language_id(language_id)
        start, _end = self.bounds(period, now)
        return self.repository.get_entry(board_pk(period, start, language_id), learner_id)
