"""
Tests for spaced repetition scheduling

Covers:
- SM-2 transition (1 / 6 / round(I * EF)), easy bonus, lapses
- Ease factor floor and quality validation
- Due-card filtering and prioritization
- Persisted reviews with optimistic versioning
"""
import pytest
import types
from datetime import datetime, timedelta, timezone

from progression.exceptions import ConcurrentModification, FlashcardNotFound, InvalidInput
from progression.logic.sm2 import (
    MIN_EASE_FACTOR,
    answer_to_quality,
    get_due_cards,
    parse_quality,
    prioritize,
    schedule_next_review,
    update_ease_factor,
)
from progression.schemas import FlashcardReviewState

NOW = datetime(2025, 11, 19, 15, 0, tzinfo=timezone.utc)


class TestScheduleNextReview:

    def test_three_good_reviews(self):
        """New card: 1 day, then 6, then round(6 * 2.5) = 15"""
        first = schedule_next_review(2, 0, 2.5, 0)
        assert (first.interval, first.repetitions) == (1, 1)

        second = schedule_next_review(2, first.interval, first.ease_factor, first.repetitions)
        assert (second.interval, second.repetitions) == (6, 2)

        third = schedule_next_review(2, second.interval, second.ease_factor, second.repetitions)
        assert second.ease_factor == 2.5
        assert (third.interval, third.repetitions) == (15, 3)

    def test_easy_gets_bonus_on_growth(self):
        """EF 2.5 + 0.1 = 2.6, 6 * 2.6 * 1.2 = 18.72 -> 19"""
        result = schedule_next_review("easy", 6, 2.5, 2)

        assert result.ease_factor == 2.6
        assert result.interval == 19
        assert result.repetitions == 3

    def test_easy_second_review_is_still_six_days(self):
        result = schedule_next_review(3, 1, 2.5, 1)
        assert result.interval == 6

    def test_hard_still_passes(self):
        result = schedule_next_review(1, 6, 2.5, 2)

        assert result.ease_factor == 2.36
        assert result.repetitions == 3
        assert result.interval == 14  # 6 * 2.36 = 14.16

    @pytest.mark.parametrize("interval,ease,repetitions", [
        (0, 2.5, 0),
        (6, 2.5, 2),
        (120, 2.9, 9),
        (15, 1.3, 4),
    ])
    def test_again_always_resets(self, interval, ease, repetitions):
        result = schedule_next_review(0, interval, ease, repetitions)

        assert result.repetitions == 0
        assert result.interval == 1
        assert result.ease_factor >= MIN_EASE_FACTOR

    def test_ease_factor_floor(self):
        assert update_ease_factor(1.3, 0) == 1.3
        assert update_ease_factor(1.4, 0) == 1.3

    def test_ease_deltas(self):
        assert update_ease_factor(2.5, 0) == 2.18
        assert update_ease_factor(2.5, 1) == 2.36
        assert update_ease_factor(2.5, 2) == 2.5
        assert update_ease_factor(2.5, 3) == 2.6

    @pytest.mark.parametrize("quality", [4, -1, 5, "great", True, 2.0, None])
    def test_invalid_quality(self, quality):
        with pytest.raises(InvalidInput):
            schedule_next_review(quality, 0, 2.5, 0)

    def test_quality_labels(self):
        assert parse_quality("again") == 0
        assert parse_quality(" Good ") == 2

    def test_answer_to_quality(self):
        assert answer_to_quality(True) == 3
        assert answer_to_quality(False) == 0

    def test_negative_state_rejected(self):
        with pytest.raises(InvalidInput):
            schedule_next_review(2, -1, 2.5, 0)
        with pytest.raises(InvalidInput):
            schedule_next_review(2, 1, 2.5, -1)


def _card(card_id, due, ease=2.5):
    return FlashcardReviewState(
        id=f"state-{card_id}",
        learner_id="u1",
        card_id=card_id,
        ease_factor=ease,
        interval=1,
        repetitions=1,
        next_review_at=due,
    )


class TestDueCards:

    def test_due_cards_is_lazy_and_filters(self):
        cards = [
            _card("a", NOW - timedelta(days=1)),
            _card("b", NOW),
            _card("c", NOW + timedelta(minutes=1)),
        ]

        due = get_due_cards(cards, NOW)

        assert isinstance(due, types.GeneratorType)
        assert [card.card_id for card in due] == ["a", "b"]

    def test_prioritize_overdue_then_difficult(self):
        same_time = NOW - timedelta(days=1)
        cards = [
            _card("easy", same_time, ease=2.8),
            _card("recent", NOW - timedelta(hours=1), ease=1.3),
            _card("hard", same_time, ease=1.5),
            _card("oldest", NOW - timedelta(days=3), ease=2.5),
        ]

        ordered = prioritize(cards)

        assert [card.card_id for card in ordered] == ["oldest", "hard", "easy", "recent"]


class TestReviewService:

    def test_first_review_creates_state(self, engine, now):
        state = engine.reviews.review_card("u1", "card-1", "good", now)

        assert state.interval == 1
        assert state.repetitions == 1
        assert state.ease_factor == 2.5
        assert state.version == 1
        assert state.next_review_at == now + timedelta(days=1)
        assert engine.reviews.get_state("u1", "card-1") == state

    def test_three_reviews_reach_fifteen_days(self, engine, now):
        engine.reviews.review_card("u1", "card-1", 2, now)
        engine.reviews.review_card("u1", "card-1", 2, now + timedelta(days=1))
        state = engine.reviews.review_card("u1", "card-1", 2, now + timedelta(days=7))

        assert state.interval == 15
        assert state.repetitions == 3
        assert state.version == 3
        assert state.last_reviewed_at == now + timedelta(days=7)

    def test_lapse_resets_persisted_state(self, engine, now):
        engine.reviews.review_card("u1", "card-1", 2, now)
        engine.reviews.review_card("u1", "card-1", 2, now + timedelta(days=1))
        state = engine.reviews.review_card("u1", "card-1", "again", now + timedelta(days=7))

        assert state.repetitions == 0
        assert state.interval == 1
        assert state.ease_factor == 2.18

    def test_invalid_quality_writes_nothing(self, engine, now):
        with pytest.raises(InvalidInput):
            engine.reviews.review_card("u1", "card-1", 7, now)

        with pytest.raises(FlashcardNotFound):
            engine.reviews.get_state("u1", "card-1")

    def test_missing_ids_rejected(self, engine, now):
        with pytest.raises(InvalidInput):
            engine.reviews.review_card("", "card-1", 2, now)

    def test_stale_version_rejected(self, engine, now):
        state = engine.reviews.review_card("u1", "card-1", 2, now)
        stale = state.model_copy(update={'version': 1, 'interval': 99})

        with pytest.raises(ConcurrentModification):
            engine.reviews.repository.save_state(stale, expected_version=0)

        assert engine.reviews.get_state("u1", "card-1").interval == 1

    def test_due_queue(self, engine, now):
        engine.reviews.review_card("u1", "a", 2, now - timedelta(days=3))
        engine.reviews.review_card("u1", "b", 2, now - timedelta(days=2))
        engine.reviews.review_card("u1", "c", 2, now)

        due = engine.reviews.due_cards("u1", now)

        assert [card.card_id for card in due] == ["a", "b"]
        assert engine.reviews.next_due_card("u1", now).card_id == "a"
        assert engine.reviews.due_count("u1", now) == 2
        assert engine.reviews.next_due_card("u2", now) is None
