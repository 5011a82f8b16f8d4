"""Daily streak tracking on the learner aggregate"""
from datetime import date, datetime
from typing import Optional, Dict, Any
import logging

from progression.config import Settings, get_settings
from progression.dynamo import local_date, utcnow
from progression.exceptions import ConcurrentModification
from progression.logic.streaks import advance_streak
from progression.services.learner_repository import LearnerRepository

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 5


class StreakService:
    def __init__(self, learners: LearnerRepository, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.learners = learners
        # Same day boundary as the daily leaderboard
        self.tz_name = settings.LEADERBOARD_TIMEZONE

    def today(self, now: Optional[datetime] = None) -> date:
        return local_date(now or utcnow(), self.tz_name)

    def record_activity(
        self,
        learner_id: str,
        today: Optional[date] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Register qualifying activity for `today`.

        Args:
            today: Activity date; defaults to the date of `now` (or the
                current time) in LEADERBOARD_TIMEZONE

        Returns:
            {"current_streak", "longest_streak", "streak_increased"}
        """
        today = today or self.today(now)

        for _ in range(MAX_WRITE_ATTEMPTS):
            learner = self.learners.get_learner(learner_id)
            current, longest, increased = advance_streak(
                learner.current_streak,
                learner.longest_streak,
                learner.last_activity_date,
                today,
            )

            unchanged = (
                learner.last_activity_date is not None
                and learner.last_activity_date >= today
            )
            if unchanged or self.learners.update_streak(
                learner_id, current, longest, today, learner.last_activity_date
            ):
                if increased:
                    logger.info(f"Streak for learner {learner_id} is now {current} (best {longest})")
                return {
                    'current_streak': current,
                    'longest_streak': longest,
                    'streak_increased': increased,
                }

        raise ConcurrentModification(f"Could not update streak for learner {learner_id}")
