"""
Hearts recovery calculation

Hearts regenerate one per interval, measured from the last heart loss.
Pure functions only; persistence lives in services.hearts_service.
"""
from datetime import datetime, timedelta
from typing import Optional
import logging

from progression.config import get_settings
from progression.dynamo import ensure_aware
from progression.schemas import HeartRecovery

settings = get_settings()
logger = logging.getLogger(__name__)

MAX_HEARTS = settings.HEARTS_MAX
HEART_REGENERATION_INTERVAL_MS = settings.HEARTS_REGEN_MINUTES * 60 * 1000

_ONE_MS = timedelta(milliseconds=1)


def recover_hearts(
    current_hearts: int,
    last_heart_loss_time: Optional[datetime],
    now: datetime,
    max_hearts: int = MAX_HEARTS,
    regen_interval_ms: int = HEART_REGENERATION_INTERVAL_MS
) -> HeartRecovery:
    """
    Calculate how many hearts the elapsed time has restored.

    Args:
        current_hearts: Stored hearts
        last_heart_loss_time: Start of the regeneration clock (None = never lost)
        now: Evaluation time
        max_hearts: Cap
        regen_interval_ms: Time to regenerate one heart

    Returns:
        HeartRecovery with hearts_to_recover, next_recovery_time and
        time_until_next_heart_ms (both None when the learner ends up full)

    Example:
        3 hearts, last loss 65 minutes ago, 30 minute interval, max 5
        -> hearts_to_recover=2, next_recovery_time=None
    """
    if regen_interval_ms <= 0:
        raise ValueError("regen_interval_ms must be positive")

    if current_hearts >= max_hearts:
        return HeartRecovery(
            current_hearts=current_hearts,
            max_hearts=max_hearts,
            hearts_to_recover=0,
            next_recovery_time=None,
            time_until_next_heart_ms=None,
            can_watch_ad=False,
        )

    now = ensure_aware(now)
    interval = timedelta(milliseconds=regen_interval_ms)
    hearts_needed = max_hearts - current_hearts

    if last_heart_loss_time is None:
        # Clock starts now, nothing to recover yet
        return HeartRecovery(
            current_hearts=current_hearts,
            max_hearts=max_hearts,
            hearts_to_recover=0,
            next_recovery_time=now + interval,
            time_until_next_heart_ms=regen_interval_ms,
            can_watch_ad=True,
        )

    # A loss timestamp in the future (clock skew) counts as no time elapsed
    elapsed = max(now - ensure_aware(last_heart_loss_time), timedelta(0))
    hearts_to_recover = min(elapsed // interval, hearts_needed)

    next_recovery_time = None
    time_until_next_ms = None
    if hearts_to_recover < hearts_needed:
        remainder = interval - (elapsed % interval)
        time_until_next_ms = int(remainder / _ONE_MS)
        next_recovery_time = now + remainder

    return HeartRecovery(
        current_hearts=current_hearts,
        max_hearts=max_hearts,
        hearts_to_recover=hearts_to_recover,
        next_recovery_time=next_recovery_time,
        time_until_next_heart_ms=time_until_next_ms,
        can_watch_ad=True,
    )


def advance_regen_clock(
    last_heart_loss_time: Optional[datetime],
    hearts_recovered: int,
    new_hearts: int,
    max_hearts: int = MAX_HEARTS,
    regen_interval_ms: int = HEART_REGENERATION_INTERVAL_MS
) -> Optional[datetime]:
    """
    Regeneration clock after applying a recovery.

    Full hearts stop the clock. Otherwise it moves forward by the consumed
    intervals so the partial interval already elapsed is kept.
    """
    if new_hearts >= max_hearts or last_heart_loss_time is None:
        return None
    return ensure_aware(last_heart_loss_time) + timedelta(milliseconds=regen_interval_ms) * hearts_recovered


def format_time_until_next_heart(ms: Optional[int]) -> str:
    """
    Human readable countdown.

    Examples:
        >>> format_time_until_next_heart(None)
        "Full"
        >>> format_time_until_next_heart(3_900_000)
        "1h 5m"
        >>> format_time_until_next_heart(723_000)
        "12m 3s"
    """
    if ms is None:
        return "Full"

    seconds = ms // 1000
    minutes = seconds // 60
    hours = minutes // 60

    if hours > 0:
        remaining_minutes = minutes % 60
        return f"{hours}h {remaining_minutes}m" if remaining_minutes else f"{hours}h"

    if minutes > 0:
        remaining_seconds = seconds % 60
        return f"{minutes}m {remaining_seconds}s" if remaining_seconds else f"{minutes}m"

    return f"{seconds}s"
