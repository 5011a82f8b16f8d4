"""
Achievement Service - Business Logic

WORKFLOW (check_and_unlock_achievements):
1. Load the learner aggregate and the active catalog
2. Skip achievements the learner already has
3. Evaluate criteria in memory through the registry
4. Write the unlock row and its XP reward in one transaction (store
   enforces uniqueness; the reward key is deterministic)
5. On a lost race, insert-or-ignore the unlock and append the reward idempotently
"""
from datetime import datetime
from typing import Iterable, List, Optional, Dict, Any
import logging

from pydantic import ValidationError

from progression.dynamo import ensure_aware, utcnow
from progression.exceptions import InvalidInput, UnknownAchievement
from progression.logic.criteria import CriteriaRegistry, DEFAULT_ACHIEVEMENTS, default_registry
from progression.schemas import (
    AchievementContext,
    AchievementProgress,
    AchievementStatus,
    LearnerAggregate,
    UnlockResult,
)
from progression.schemas_achievements import AchievementDefinition
from progression.services.achievement_repository import AchievementRepository, unlock_to_item
from progression.services.learner_repository import LearnerRepository
from progression.services.xp_ledger import XPLedger

logger = logging.getLogger(__name__)


def reward_key(achievement_id: str) -> str:
    """One reward event per (learner, achievement), whatever the number of attempts"""
    return f"achievement-{achievement_id}"


class AchievementService:
    def __init__(
        self,
        learners: LearnerRepository,
        achievements: AchievementRepository,
        ledger: XPLedger,
        registry: Optional[CriteriaRegistry] = None
    ):
        self.learners = learners
        self.achievements = achievements
        self.ledger = ledger
        self.registry = registry or default_registry

    def seed_catalog(self, definitions: Optional[Iterable[Dict[str, Any]]] = None) -> List[AchievementDefinition]:
        """Idempotently load catalog rows (the built-in set by default)"""
        seeded = []
        for data in (definitions if definitions is not None else DEFAULT_ACHIEVEMENTS):
            seeded.append(self.achievements.seed_definition(data))
        logger.info(f"Seeded {len(seeded)} achievement definitions")
        return seeded

    def list_active(self) -> List[AchievementDefinition]:
        return self.achievements.list_definitions(active_only=True)

    def get_by_code(self, code: str) -> AchievementDefinition:
        definition = self.achievements.get_by_code(code)
        if definition is None:
            raise UnknownAchievement(code)
        return definition

    def _unlock(
        self,
        learner: LearnerAggregate,
        definition: AchievementDefinition,
        now: datetime
    ) -> UnlockResult:
        """
        Insert the unlock row and its XP reward in one transaction.

        When that transaction is cancelled the unlock already exists (another
        request won, or an older row was written without its reward): fall
        back to insert-or-ignore and the idempotent reward append.
        """
        description = f"Achievement unlocked: {definition.name}"

        if definition.xp_reward > 0:
            unlock = self.achievements.new_unlock(learner.learner_id, definition.id, now)
            _event, written = self.ledger.append_xp_with_items(
                learner.learner_id,
                definition.xp_reward,
                "achievement",
                [unlock_to_item(unlock)],
                source_id=definition.id,
                description=description,
                idempotency_key=reward_key(definition.id),
                now=now,
            )
            if written:
                return self._result(definition, unlock.unlocked_at, True)

        unlock, created = self.achievements.insert_unlock(learner.learner_id, definition.id, now)

        if definition.xp_reward > 0:
            # Same key on every attempt: pays a missing reward, never a second one
            self.ledger.append_xp(
                learner.learner_id,
                definition.xp_reward,
                "achievement",
                source_id=definition.id,
                description=description,
                idempotency_key=reward_key(definition.id),
                now=now,
            )

        return self._result(definition, unlock.unlocked_at, created)

    @staticmethod
    def _result(definition: AchievementDefinition, unlocked_at: datetime, created: bool) -> UnlockResult:
        return UnlockResult(
            achievement_id=definition.id,
            code=definition.code,
            name=definition.name,
            icon=definition.icon,
            xp_reward=definition.xp_reward,
            unlocked_at=unlocked_at,
            newly_unlocked=created,
        )

    def check_and_unlock_achievements(
        self,
        learner_id: str,
        context: Any,
        now: Optional[datetime] = None
    ) -> List[UnlockResult]:
        """
        Evaluate every active achievement the learner does not have yet.

        Args:
            learner_id: Learner to check
            context: AchievementContext or a dict {"trigger": ..., "data": {...}}

        Returns:
            Newly unlocked achievements (for toast display). Achievements
            another request unlocked concurrently are not reported.

        One failing achievement is logged and does not stop the others.
        """
        try:
            context = AchievementContext.model_validate(context)
        except ValidationError as e:
            raise InvalidInput(f"Invalid achievement context: {e.errors()[0]['msg']}")

        now = ensure_aware(now) if now else utcnow()
        learner = self.learners.get_learner(learner_id)
        definitions = self.achievements.list_definitions(active_only=True)
        unlocked_ids = {unlock.achievement_id for unlock in self.achievements.list_unlocks(learner_id)}

        results = []
        for definition in definitions:
            if definition.id in unlocked_ids:
                continue

            try:
                if not self.registry.evaluate(definition, learner, context):
                    continue

                result = self._unlock(learner, definition, now)
            except Exception as e:
                logger.error(f"Error unlocking {definition.code} for learner {learner_id}: {e}", exc_info=True)
                continue

            if not result.newly_unlocked:
                continue

            results.append(result)
            logger.info(f"🏆 Learner {learner_id} unlocked {definition.code} (+{definition.xp_reward} XP)")

            if definition.xp_reward > 0:
                # Later criteria in the same pass see the reward
                learner = learner.model_copy(update={'total_xp': learner.total_xp + definition.xp_reward})

        return results

    def grant_achievement(self, learner_id: str, code: str, now: Optional[datetime] = None) -> UnlockResult:
        """
        Manual unlock path (admin, migrations).

        Already unlocked returns the existing state with newly_unlocked=False.
        """
        definition = self.get_by_code(code)
        learner = self.learners.get_learner(learner_id)
        result = self._unlock(learner, definition, ensure_aware(now) if now else utcnow())
        if result.newly_unlocked:
            logger.info(f"Granted {code} to learner {learner_id}")
        return result

    def get_progress(self, learner_id: str) -> AchievementProgress:
        self.learners.get_learner(learner_id)
        definitions = self.achievements.list_definitions(active_only=True)
        unlocks = {unlock.achievement_id: unlock for unlock in self.achievements.list_unlocks(learner_id)}

        statuses = []
        for definition in sorted(definitions, key=lambda d: d.code):
            unlock = unlocks.get(definition.id)
            statuses.append(AchievementStatus(
                code=definition.code,
                name=definition.name,
                description=definition.description,
                xp_reward=definition.xp_reward,
                unlocked=unlock is not None,
                unlocked_at=unlock.unlocked_at if unlock else None,
            ))

        unlocked = sum(1 for status in statuses if status.unlocked)
        total = len(statuses)
        return AchievementProgress(
            learner_id=learner_id,
            unlocked=unlocked,
            total=total,
            percentage=round(unlocked * 100 / total) if total else 0,
            achievements=statuses,
        )
