"""
Hearts service

Recovery is lazy: nothing runs on a timer, every read applies whatever the
elapsed time has restored. Writes are compare-and-set on (hearts, clock)
and retried a few times when another request got there first.
"""
from datetime import datetime, timedelta
from typing import Optional, Tuple
import logging
import math

from progression.config import Settings, get_settings
from progression.dynamo import ensure_aware, utcnow
from progression.exceptions import (
    ConcurrentModification,
    CooldownActive,
    HeartsUnavailable,
    InvalidInput,
)
from progression.logic.hearts import (
    advance_regen_clock,
    format_time_until_next_heart,
    recover_hearts,
)
from progression.schemas import HeartRecovery, HeartsState, LearnerAggregate
from progression.services.learner_repository import LearnerRepository
from progression.services.xp_ledger import XPLedger

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 5


class HeartsService:
    """Hearts regeneration, loss, ad rewards and purchases"""

    def __init__(
        self,
        learners: LearnerRepository,
        ledger: XPLedger,
        settings: Optional[Settings] = None
    ):
        settings = settings or get_settings()
        self.learners = learners
        self.ledger = ledger
        self.max_hearts = settings.HEARTS_MAX
        self.regen_interval_ms = settings.HEARTS_REGEN_MINUTES * 60 * 1000
        self.ad_cooldown = timedelta(minutes=settings.HEARTS_AD_COOLDOWN_MINUTES)
        self.xp_cost = settings.HEARTS_XP_COST
        self.max_purchase = settings.HEARTS_MAX_PURCHASE

    def calculate_recovery(self, learner: LearnerAggregate, now: Optional[datetime] = None) -> HeartRecovery:
        """Pure recovery calculation for a learner snapshot"""
        return recover_hearts(
            current_hearts=learner.hearts,
            last_heart_loss_time=learner.last_heart_loss_at,
            now=now or utcnow(),
            max_hearts=self.max_hearts,
            regen_interval_ms=self.regen_interval_ms,
        )

    def _recovered(self, learner: LearnerAggregate, now: datetime) -> Tuple[int, Optional[datetime], HeartRecovery]:
        """(hearts, clock) after applying pending recovery in memory"""
        recovery = self.calculate_recovery(learner, now)
        hearts = min(learner.hearts + recovery.hearts_to_recover, self.max_hearts)
        if recovery.hearts_to_recover == 0:
            clock = learner.last_heart_loss_at if hearts < self.max_hearts else None
        else:
            clock = advance_regen_clock(
                learner.last_heart_loss_at,
                recovery.hearts_to_recover,
                hearts,
                max_hearts=self.max_hearts,
                regen_interval_ms=self.regen_interval_ms,
            )
        return hearts, clock, recovery

    def _state(
        self,
        learner_id: str,
        hearts: int,
        clock: Optional[datetime],
        now: datetime,
        hearts_changed: int = 0,
        message: str = ""
    ) -> HeartsState:
        next_recovery_time = None
        time_until_next_ms = None
        if hearts < self.max_hearts:
            recovery = recover_hearts(hearts, clock, now, self.max_hearts, self.regen_interval_ms)
            next_recovery_time = recovery.next_recovery_time
            time_until_next_ms = recovery.time_until_next_heart_ms

        return HeartsState(
            learner_id=learner_id,
            hearts=hearts,
            max_hearts=self.max_hearts,
            hearts_changed=hearts_changed,
            next_recovery_time=next_recovery_time,
            time_until_next_heart_ms=time_until_next_ms,
            message=message or f"Next heart: {format_time_until_next_heart(time_until_next_ms)}",
        )

    def apply_heart_recovery(self, learner_id: str, now: Optional[datetime] = None) -> HeartsState:
        """
        Persist hearts restored by elapsed time.

        Nothing is written when no heart is due. A learner below max without
        a clock gets the clock started now (hearts untouched).
        """
        now = ensure_aware(now) if now else utcnow()

        for attempt in range(MAX_WRITE_ATTEMPTS):
            learner = self.learners.get_learner(learner_id)
            hearts, clock, recovery = self._recovered(learner, now)

            if recovery.hearts_to_recover == 0:
                if hearts < self.max_hearts and learner.last_heart_loss_at is None:
                    clock = now
                    if not self.learners.set_hearts(learner_id, hearts, clock, learner.hearts, None):
                        continue
                    logger.info(f"Started regeneration clock for learner {learner_id}")
                return self._state(learner_id, hearts, clock, now)

            if self.learners.set_hearts(learner_id, hearts, clock, learner.hearts, learner.last_heart_loss_at):
                logger.info(
                    f"Recovered {recovery.hearts_to_recover} heart(s) for learner {learner_id}: "
                    f"{learner.hearts} -> {hearts}"
                )
                return self._state(learner_id, hearts, clock, now, hearts_changed=hearts - learner.hearts)

            logger.debug(f"Hearts recovery retry {attempt + 1} for learner {learner_id}")

        raise ConcurrentModification(f"Could not apply heart recovery for learner {learner_id}")

    def lose_heart(self, learner_id: str, now: Optional[datetime] = None) -> HeartsState:
        """
        Take one heart (wrong answer).

        Pending recovery is applied first. Leaving max starts the clock,
        otherwise the running clock is kept.

        Raises:
            HeartsUnavailable: no hearts left
        """
        now = ensure_aware(now) if now else utcnow()

        for _ in range(MAX_WRITE_ATTEMPTS):
            learner = self.learners.get_learner(learner_id)
            hearts, clock, _recovery = self._recovered(learner, now)

            if hearts <= 0:
                raise HeartsUnavailable("No hearts left")

            new_hearts = hearts - 1
            new_clock = now if (hearts >= self.max_hearts or clock is None) else clock

            if self.learners.set_hearts(learner_id, new_hearts, new_clock, learner.hearts, learner.last_heart_loss_at):
                logger.info(f"Learner {learner_id} lost a heart: {hearts} -> {new_hearts}")
                return self._state(
                    learner_id, new_hearts, new_clock, now,
                    hearts_changed=new_hearts - learner.hearts,
                )

        raise ConcurrentModification(f"Could not update hearts for learner {learner_id}")

    def watch_ad(self, learner_id: str, now: Optional[datetime] = None) -> HeartsState:
        """
        Instant +1 heart, at most once per cooldown window.

        Raises:
            HeartsUnavailable: hearts already full
            CooldownActive: an ad was watched inside the cooldown window
        """
        now = ensure_aware(now) if now else utcnow()
        cooldown_start = now - self.ad_cooldown

        for _ in range(MAX_WRITE_ATTEMPTS):
            learner = self.learners.get_learner(learner_id)
            hearts, clock, _recovery = self._recovered(learner, now)

            if hearts >= self.max_hearts:
                raise HeartsUnavailable("Hearts already full")

            if learner.last_ad_watch_at and learner.last_ad_watch_at > cooldown_start:
                remaining = learner.last_ad_watch_at + self.ad_cooldown - now
                retry_after = math.ceil(remaining.total_seconds())
                raise CooldownActive(
                    f"Ad cooldown active, try again in {format_time_until_next_heart(retry_after * 1000)}",
                    retry_after_seconds=retry_after,
                )

            new_hearts = hearts + 1
            new_clock = None if new_hearts >= self.max_hearts else (clock or now)

            if self.learners.grant_ad_heart(
                learner_id,
                hearts=new_hearts,
                heart_clock=new_clock,
                expected_hearts=learner.hearts,
                expected_clock=learner.last_heart_loss_at,
                watched_at=now,
                cooldown_start=cooldown_start,
            ):
                logger.info(f"Learner {learner_id} watched an ad: {hearts} -> {new_hearts}")
                return self._state(
                    learner_id, new_hearts, new_clock, now,
                    hearts_changed=new_hearts - learner.hearts,
                    message="Heart restored",
                )

        raise ConcurrentModification(f"Could not grant ad heart for learner {learner_id}")

    def purchase_hearts(self, learner_id: str, amount: int = 1, now: Optional[datetime] = None) -> HeartsState:
        """
        Buy hearts with XP (HEARTS_XP_COST each), capped at the missing hearts.

        The negative XP event and the hearts update are one transaction.

        Raises:
            InvalidInput: amount outside 1..HEARTS_MAX_PURCHASE
            HeartsUnavailable: hearts full or not enough XP
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or not 1 <= amount <= self.max_purchase:
            raise InvalidInput(f"amount must be between 1 and {self.max_purchase}, got: {amount!r}")

        now = ensure_aware(now) if now else utcnow()

        for _ in range(MAX_WRITE_ATTEMPTS):
            learner = self.learners.get_learner(learner_id)
            hearts, clock, _recovery = self._recovered(learner, now)

            missing = self.max_hearts - hearts
            if missing <= 0:
                raise HeartsUnavailable("Hearts already full")

            bought = min(amount, missing)
            cost = bought * self.xp_cost
            if learner.total_xp < cost:
                raise HeartsUnavailable(f"Not enough XP: {cost} required, {learner.total_xp} available")

            new_hearts = hearts + bought
            new_clock = None if new_hearts >= self.max_hearts else (clock or now)

            try:
                self.ledger.append_purchase(
                    learner_id,
                    cost=cost,
                    hearts=new_hearts,
                    heart_clock=new_clock,
                    expected_hearts=learner.hearts,
                    expected_clock=learner.last_heart_loss_at,
                    description=f"Purchased {bought} heart(s)",
                    now=now,
                )
            except ConcurrentModification:
                logger.debug(f"Hearts purchase retry for learner {learner_id}")
                continue

            return self._state(
                learner_id, new_hearts, new_clock, now,
                hearts_changed=new_hearts - learner.hearts,
                message=f"Purchased {bought} heart(s) for {cost} XP",
            )

        raise ConcurrentModification(f"Could not purchase hearts for learner {learner_id}")
