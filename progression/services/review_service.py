"""
Spaced repetition review service

Due-ness is computed on every request from next_review_at, nothing is cached.
"""
from datetime import datetime
from typing import List, Optional, Union
import logging
import uuid

from progression.dynamo import ensure_aware, utcnow
from progression.exceptions import ConcurrentModification, FlashcardNotFound, InvalidInput
from progression.logic.sm2 import (
    INITIAL_EASE_FACTOR,
    INITIAL_INTERVAL,
    get_due_cards,
    next_review_at,
    parse_quality,
    prioritize,
    schedule_next_review,
)
from progression.schemas import FlashcardReviewState
from progression.services.review_repository import ReviewRepository

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 3


class ReviewService:
    def __init__(self, repository: ReviewRepository):
        self.repository = repository

    def review_card(
        self,
        learner_id: str,
        card_id: str,
        quality: Union[int, str],
        now: Optional[datetime] = None
    ) -> FlashcardReviewState:
        """
        Apply one rating to a card and persist the new schedule.

        The first review of a card starts from ease 2.5, interval 0,
        repetitions 0.

        Raises:
            InvalidInput: missing ids or quality outside 0-3
            ConcurrentModification: kept losing the version race
        """
        if not learner_id or not card_id:
            raise InvalidInput("learner_id and card_id are required")
        quality = parse_quality(quality)
        now = ensure_aware(now) if now else utcnow()

        for _ in range(MAX_WRITE_ATTEMPTS):
            current = self.repository.get_state(learner_id, card_id)
            if current is None:
                state_id, interval, ease, repetitions, version = (
                    str(uuid.uuid4()), INITIAL_INTERVAL, INITIAL_EASE_FACTOR, 0, 0
                )
            else:
                state_id, interval, ease, repetitions, version = (
                    current.id, current.interval, current.ease_factor, current.repetitions, current.version
                )

            schedule = schedule_next_review(quality, interval, ease, repetitions)
            new_state = FlashcardReviewState(
                id=state_id,
                learner_id=learner_id,
                card_id=card_id,
                ease_factor=schedule.ease_factor,
                interval=schedule.interval,
                repetitions=schedule.repetitions,
                next_review_at=next_review_at(now, schedule.interval),
                last_reviewed_at=now,
                version=version + 1,
            )

            try:
                self.repository.save_state(new_state, expected_version=version)
            except ConcurrentModification:
                continue

            logger.info(
                f"Card {card_id} reviewed by {learner_id}: quality={quality}, "
                f"interval={schedule.interval}d, ease={schedule.ease_factor}, reps={schedule.repetitions}"
            )
            return new_state

        raise ConcurrentModification(f"Card {card_id} was reviewed concurrently, please retry")

    def get_state(self, learner_id: str, card_id: str) -> FlashcardReviewState:
        state = self.repository.get_state(learner_id, card_id)
        if state is None:
            raise FlashcardNotFound(learner_id, card_id)
        return state

    def due_cards(self, learner_id: str, now: Optional[datetime] = None) -> List[FlashcardReviewState]:
        """Due cards, most overdue and hardest first"""
        return prioritize(get_due_cards(self.repository.list_states(learner_id), now or utcnow()))

    def next_due_card(self, learner_id: str, now: Optional[datetime] = None) -> Optional[FlashcardReviewState]:
        """The one card a review session should show next"""
        due = self.due_cards(learner_id, now)
        return due[0] if due else None

    def due_count(self, learner_id: str, now: Optional[datetime] = None) -> int:
        return sum(1 for _ in get_due_cards(self.repository.list_states(learner_id), now or utcnow()))
