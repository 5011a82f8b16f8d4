"""
Progression engine

Wires every component around one DynamoDB client, so a request handler
(or a test) builds a single object and passes in the client it wants.
"""
from datetime import date, datetime
from typing import Any, Dict, Optional
import logging

from progression.config import Settings
from progression.dynamo import DynamoDBClient, get_db_client
from progression.logic import listeners
from progression.logic.criteria import CriteriaRegistry
from progression.schemas import LearnerAggregate
from progression.services.achievement_repository import AchievementRepository
from progression.services.achievement_service import AchievementService
from progression.services.hearts_service import HeartsService
from progression.services.leaderboard_repository import LeaderboardRepository
from progression.services.leaderboard_service import LeaderboardService
from progression.services.learner_repository import LearnerRepository
from progression.services.review_repository import ReviewRepository
from progression.services.review_service import ReviewService
from progression.services.streak_service import StreakService
from progression.services.xp_ledger import XPLedger
from progression.services.xp_repository import XPRepository

logger = logging.getLogger(__name__)


class ProgressionEngine:
    """
    Entry point for request handlers.

    Example:
        engine = ProgressionEngine(DynamoDBClient())
        engine.create_learner("learner-1")
        engine.on_exercise_answered("learner-1", "ex-1", correct=True, xp_reward=10)
    """

    def __init__(
        self,
        db: Optional[DynamoDBClient] = None,
        settings: Optional[Settings] = None,
        registry: Optional[CriteriaRegistry] = None
    ):
        self.db = db or get_db_client()
        self.settings = settings or self.db.settings

        self.learners = LearnerRepository(self.db, max_hearts=self.settings.HEARTS_MAX)
        self.ledger = XPLedger(self.learners, XPRepository(self.db))
        self.hearts = HeartsService(self.learners, self.ledger, self.settings)
        self.streaks = StreakService(self.learners, self.settings)
        self.achievements = AchievementService(
            self.learners, AchievementRepository(self.db), self.ledger, registry
        )
        self.leaderboard = LeaderboardService(LeaderboardRepository(self.db), self.settings)
        self.reviews = ReviewService(ReviewRepository(self.db))

    def create_learner(self, learner_id: str, now: Optional[datetime] = None) -> LearnerAggregate:
        return self.learners.create_learner(learner_id, now)

    def get_learner(self, learner_id: str) -> LearnerAggregate:
        return self.learners.get_learner(learner_id)

    def on_exercise_answered(
        self,
        learner_id: str,
        exercise_id: str,
        correct: bool,
        xp_reward: int = 0,
        language_id: Optional[str] = None,
        perfect_exercises: Optional[int] = None,
        idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        return listeners.on_exercise_answered(self, {
            'learnerId': learner_id,
            'exerciseId': exercise_id,
            'correct': correct,
            'xpReward': xp_reward,
            'languageId': language_id,
            'perfectExercises': perfect_exercises,
            'idempotencyKey': idempotency_key,
        })

    def on_lesson_completed(
        self,
        learner_id: str,
        lesson_id: str,
        xp_reward: int = 0,
        accuracy: Optional[float] = None,
        lessons_completed: Optional[int] = None,
        language_id: Optional[str] = None,
        activity_date: Optional[date] = None,
        idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        return listeners.on_lesson_completed(self, {
            'learnerId': learner_id,
            'lessonId': lesson_id,
            'xpReward': xp_reward,
            'accuracy': accuracy,
            'lessonsCompleted': lessons_completed,
            'languageId': language_id,
            'activityDate': activity_date,
            'idempotencyKey': idempotency_key,
        })
