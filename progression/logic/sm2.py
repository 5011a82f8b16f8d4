"""
Spaced repetition scheduling (modified SM-2)

Quality scale is 0-3:
    0 again  - not recalled, schedule resets
    1 hard   - recalled with effort
    2 good   - recalled
    3 easy   - recalled instantly, interval gets a bonus

The ease factor moves on every review (before interval logic) and never
drops below 1.3.
"""
from datetime import datetime, timedelta
from typing import Iterable, Iterator, List, Union
import math
import logging

from progression.dynamo import ensure_aware
from progression.exceptions import InvalidInput
from progression.schemas import FlashcardReviewState, ReviewSchedule

logger = logging.getLogger(__name__)

MIN_QUALITY = 0
MAX_QUALITY = 3
PASS_THRESHOLD = 1  # quality below this is a lapse

QUALITY_LABELS = {
    "again": 0,
    "hard": 1,
    "good": 2,
    "easy": 3,
}

INITIAL_EASE_FACTOR = 2.5
MIN_EASE_FACTOR = 1.3
INITIAL_INTERVAL = 0
FIRST_INTERVAL_DAYS = 1
SECOND_INTERVAL_DAYS = 6
EASY_BONUS = 1.2


def parse_quality(value: Union[int, str]) -> int:
    """Accept an integer rating or its label, reject anything outside 0-3"""
    if isinstance(value, str):
        label = value.strip().lower()
        if label in QUALITY_LABELS:
            return QUALITY_LABELS[label]
        raise InvalidInput(f"quality must be one of {list(QUALITY_LABELS)} or {MIN_QUALITY}-{MAX_QUALITY}, got: {value!r}")

    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(f"quality must be an integer, got: {value!r}")

    if not MIN_QUALITY <= value <= MAX_QUALITY:
        raise InvalidInput(f"quality must be between {MIN_QUALITY} and {MAX_QUALITY}, got: {value}")
    return value


def answer_to_quality(knows_it: bool) -> int:
    """Binary know / don't know buttons map to the ends of the scale"""
    return MAX_QUALITY if knows_it else MIN_QUALITY


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def update_ease_factor(ease_factor: float, quality: int) -> float:
    """
    EF' = max(1.3, EF + (0.1 - (3 - q) * (0.08 + (3 - q) * 0.02)))

    Deltas: again -0.32, hard -0.14, good 0.0, easy +0.1
    """
    miss = MAX_QUALITY - quality
    new_ease = ease_factor + (0.1 - miss * (0.08 + miss * 0.02))
    return round(max(MIN_EASE_FACTOR, new_ease), 2)


def schedule_next_review(
    quality: Union[int, str],
    current_interval: int = INITIAL_INTERVAL,
    ease_factor: float = INITIAL_EASE_FACTOR,
    repetitions: int = 0
) -> ReviewSchedule:
    """
    Calculate the next interval, ease factor and repetition count.

    Args:
        quality: 0-3 rating (or label)
        current_interval: Previous interval in days (0 for a new card)
        ease_factor: Previous ease factor (2.5 for a new card)
        repetitions: Consecutive successful reviews so far

    Returns:
        ReviewSchedule

    Examples:
        new card, good -> interval 1, repetitions 1
        then good      -> interval 6, repetitions 2
        then good      -> interval round(6 * 2.5) = 15, repetitions 3
    """
    quality = parse_quality(quality)
    if repetitions < 0:
        raise InvalidInput(f"repetitions cannot be negative: {repetitions}")
    if current_interval < 0:
        raise InvalidInput(f"current_interval cannot be negative: {current_interval}")

    new_ease = update_ease_factor(ease_factor, quality)

    if quality < PASS_THRESHOLD:
        return ReviewSchedule(interval=FIRST_INTERVAL_DAYS, ease_factor=new_ease, repetitions=0)

    if repetitions == 0:
        interval = FIRST_INTERVAL_DAYS
    elif repetitions == 1:
        interval = SECOND_INTERVAL_DAYS
    else:
        growth = max(current_interval, 1) * new_ease
        if quality == MAX_QUALITY:
            growth *= EASY_BONUS
        interval = max(_round_half_up(growth), 1)

    return ReviewSchedule(interval=interval, ease_factor=new_ease, repetitions=repetitions + 1)


def next_review_at(last_reviewed_at: datetime, interval_days: int) -> datetime:
    return ensure_aware(last_reviewed_at) + timedelta(days=interval_days)


def get_due_cards(
    all_cards: Iterable[FlashcardReviewState],
    now: datetime
) -> Iterator[FlashcardReviewState]:
    """Lazily yield cards whose next review is at or before `now`"""
    now = ensure_aware(now)
    for card in all_cards:
        if ensure_aware(card.next_review_at) <= now:
            yield card


def prioritize(cards: Iterable[FlashcardReviewState]) -> List[FlashcardReviewState]:
    """Most overdue first, then historically difficult (lower ease) first"""
    return sorted(cards, key=lambda card: (ensure_aware(card.next_review_at), card.ease_factor))
