"""
Pydantic schemas for the progression engine

All schemas use Pydantic v2 syntax. Enumerated values are kept as plain
strings validated against module constants.
"""
from pydantic import BaseModel, Field, field_validator
from typing import Optional, Dict, Any, List
from datetime import datetime, date


# ============= ENUMS AND CONSTANTS =============

XP_SOURCES = [
    "exercise",
    "lesson",
    "achievement",
    "unit_bonus",
    "purchase",
    "challenge",
    "streak_bonus",
]

LEADERBOARD_PERIODS = ["daily", "weekly", "monthly", "all_time"]

ACHIEVEMENT_TRIGGERS = [
    "lesson_completed",
    "streak_updated",
    "exercise_completed",
    "xp_earned",
]


# ============= LEARNER =============

class LearnerAggregate(BaseModel):
    """Denormalized learner summary, updated on every event"""
    learner_id: str = Field(..., min_length=1)
    total_xp: int = Field(default=0, description="Running total of all XP events")
    hearts: int = Field(default=5, ge=0, description="Current hearts (0..max)")
    current_streak: int = Field(default=0, ge=0)
    longest_streak: int = Field(default=0, ge=0)
    last_activity_date: Optional[date] = None
    last_heart_loss_at: Optional[datetime] = Field(None, description="Start of the regeneration clock")
    last_ad_watch_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


# ============= XP =============

class XPEvent(BaseModel):
    """Immutable ledger row"""
    id: str
    learner_id: str
    amount: int = Field(..., description="Signed amount, negative for purchases")
    source: str
    source_id: Optional[str] = None
    description: Optional[str] = None
    created_at: datetime

    @field_validator('source')
    @classmethod
    def validate_source(cls, v: str) -> str:
        if v not in XP_SOURCES:
            raise ValueError(f"source must be one of {XP_SOURCES}, got: {v}")
        return v


class XPSourceTotal(BaseModel):
    source: str
    total_xp: int
    count: int


class XPSummary(BaseModel):
    """Reconciliation of the cached total against the event log"""
    learner_id: str
    cached_total: int
    calculated_total: int
    by_source: List[XPSourceTotal] = Field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return self.cached_total == self.calculated_total


# ============= HEARTS =============

class HeartRecovery(BaseModel):
    """Output of the pure recovery calculation"""
    current_hearts: int
    max_hearts: int
    hearts_to_recover: int = Field(..., ge=0)
    next_recovery_time: Optional[datetime] = None
    time_until_next_heart_ms: Optional[int] = Field(None, ge=0)
    can_watch_ad: bool = False


class HeartsState(BaseModel):
    """What callers display after any hearts operation"""
    learner_id: str
    hearts: int = Field(..., ge=0)
    max_hearts: int
    hearts_changed: int = Field(default=0, description="Hearts added (positive) or lost (negative)")
    next_recovery_time: Optional[datetime] = None
    time_until_next_heart_ms: Optional[int] = None
    message: str = ""


# ============= LEADERBOARD =============

class LeaderboardEntry(BaseModel):
    id: str
    learner_id: str
    period: str
    period_start: datetime
    period_end: datetime
    language_id: Optional[str] = None
    xp: int = 0
    rank: int = Field(default=0, ge=0, description="0 until the partition is ranked")
    created_at: datetime

    @field_validator('period')
    @classmethod
    def validate_period(cls, v: str) -> str:
        if v not in LEADERBOARD_PERIODS:
            raise ValueError(f"period must be one of {LEADERBOARD_PERIODS}, got: {v}")
        return v


# ============= SPACED REPETITION =============

class ReviewSchedule(BaseModel):
    """Result of one SM-2 transition"""
    interval: int = Field(..., ge=1, description="Days until next review")
    ease_factor: float = Field(..., ge=1.3)
    repetitions: int = Field(..., ge=0)


class FlashcardReviewState(BaseModel):
    id: str
    learner_id: str
    card_id: str
    ease_factor: float = Field(default=2.5, ge=1.3)
    interval: int = Field(default=1, ge=1)
    repetitions: int = Field(default=0, ge=0)
    next_review_at: datetime
    last_reviewed_at: Optional[datetime] = None
    version: int = Field(default=0, ge=0, description="Optimistic lock counter")


# ============= ACHIEVEMENTS =============

class ContextData(BaseModel):
    """
    Known payload fields sent with an achievement check.

    Counts come from the lesson/exercise layer; anything else goes in extra.
    """
    is_correct: Optional[bool] = None
    accuracy: Optional[float] = Field(None, ge=0, le=100)
    lessons_completed: Optional[int] = Field(None, ge=0)
    perfect_exercises: Optional[int] = Field(None, ge=0)
    exercise_id: Optional[str] = None
    lesson_id: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class AchievementContext(BaseModel):
    trigger: str
    data: ContextData = Field(default_factory=ContextData)

    @field_validator('trigger')
    @classmethod
    def validate_trigger(cls, v: str) -> str:
        if v not in ACHIEVEMENT_TRIGGERS:
            raise ValueError(f"trigger must be one of {ACHIEVEMENT_TRIGGERS}, got: {v}")
        return v


class AchievementUnlock(BaseModel):
    id: str
    learner_id: str
    achievement_id: str
    unlocked_at: datetime


class UnlockResult(BaseModel):
    """Descriptor returned for toast/notification display"""
    achievement_id: str
    code: str
    name: str
    icon: Optional[str] = None
    xp_reward: int
    unlocked_at: datetime
    newly_unlocked: bool = True


class AchievementStatus(BaseModel):
    code: str
    name: str
    description: str = ""
    xp_reward: int
    unlocked: bool
    unlocked_at: Optional[datetime] = None


class AchievementProgress(BaseModel):
    learner_id: str
    unlocked: int
    total: int
    percentage: int
    achievements: List[AchievementStatus] = Field(default_factory=list)
