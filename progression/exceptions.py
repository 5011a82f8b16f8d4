"""
Engine errors.

Each error carries the HTTP-equivalent status the request layer should
answer with, so handlers can map them without knowing engine internals.
"""
from typing import Optional


class ProgressionError(Exception):
    """Base class for all engine errors"""
    
    status_code = 500
    
    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class InvalidInput(ProgressionError, ValueError):
    """Malformed identifiers, out-of-range ratings, unknown enum values"""
    
    status_code = 400


class NotFound(ProgressionError):
    status_code = 404


class LearnerNotFound(NotFound):
    def __init__(self, learner_id: str):
        super().__init__(f"Learner {learner_id} not found")
        self.learner_id = learner_id


class FlashcardNotFound(NotFound):
    def __init__(self, learner_id: str, card_id: str):
        super().__init__(f"No review state for card {card_id} (learner {learner_id})")
        self.learner_id = learner_id
        self.card_id = card_id


class UnknownAchievement(NotFound):
    def __init__(self, code: str):
        super().__init__(f"Unknown achievement code: {code}")
        self.code = code


class HeartsUnavailable(ProgressionError):
    """Hearts operation not allowed in the current state (full, empty, unpaid)"""
    
    status_code = 409


class CooldownActive(ProgressionError):
    status_code = 429
    
    def __init__(self, detail: str, retry_after_seconds: int):
        super().__init__(detail)
        self.retry_after_seconds = retry_after_seconds


class LeaderboardBusy(ProgressionError):
    """Another writer holds the ranking lock for the partition"""
    
    status_code = 409


class StorageUnavailable(ProgressionError):
    status_code = 503
    
    def __init__(self, detail: str, cause: Optional[BaseException] = None):
        super().__init__(detail)
        self.cause = cause


class ConcurrentModification(ProgressionError):
    """Optimistic version check failed, the caller may re-read and retry"""
    
    status_code = 409
