"""
Daily streak state transition
"""
from datetime import date
from typing import Optional, Tuple
import logging

logger = logging.getLogger(__name__)


def advance_streak(
    current_streak: int,
    longest_streak: int,
    last_activity_date: Optional[date],
    today: date
) -> Tuple[int, int, bool]:
    """
    Calculate streak after activity on `today`.

    Returns:
        Tuple of (current_streak, longest_streak, streak_increased)

    Logic:
        - First activity ever: streak starts at 1
        - Same day: no change
        - Exactly one day after the last activity: +1
        - Gap of two or more days: reset to 1
        - Activity dated before the last one (late sync): no change
    """
    if last_activity_date is None:
        logger.info("First activity ever, starting streak at 1")
        return 1, max(longest_streak, 1), True

    delta = (today - last_activity_date).days

    if delta <= 0:
        return current_streak, longest_streak, False

    if delta == 1:
        new_streak = current_streak + 1
        return new_streak, max(longest_streak, new_streak), True

    logger.info(f"Streak of {current_streak} days broken after {delta} days without activity")
    return 1, max(longest_streak, 1), False
