"""Learner Aggregate - Data Access Layer"""
from datetime import date, datetime
from typing import Optional, Dict, Any
import logging

from botocore.exceptions import BotoCoreError, ClientError

from progression.config import get_settings
from progression.dynamo import (
    DynamoDBClient,
    from_iso,
    get_db_client,
    is_conditional_failure,
    python_dict,
    to_iso,
    utcnow,
)
from progression.exceptions import LearnerNotFound, StorageUnavailable
from progression.schemas import LearnerAggregate

logger = logging.getLogger(__name__)


def learner_from_item(item: Dict[str, Any]) -> LearnerAggregate:
    item = python_dict(item)
    last_activity = item.get('last_activity_date')
    return LearnerAggregate(
        learner_id=item['learner_id'],
        total_xp=item.get('total_xp', 0),
        hearts=item.get('hearts', 0),
        current_streak=item.get('current_streak', 0),
        longest_streak=item.get('longest_streak', 0),
        last_activity_date=date.fromisoformat(last_activity) if last_activity else None,
        last_heart_loss_at=from_iso(item.get('last_heart_loss_at')),
        last_ad_watch_at=from_iso(item.get('last_ad_watch_at')),
        created_at=from_iso(item.get('created_at')),
    )


def _clock_condition(expected_clock: Optional[datetime], values: Dict[str, Any]) -> str:
    """Condition that the regeneration clock is still what we read"""
    if expected_clock is None:
        return "attribute_not_exists(last_heart_loss_at)"
    values[':expected_clock'] = to_iso(expected_clock)
    return "last_heart_loss_at = :expected_clock"


def _clock_update(heart_clock: Optional[datetime], values: Dict[str, Any]) -> Dict[str, str]:
    if heart_clock is None:
        return {'REMOVE': 'last_heart_loss_at'}
    values[':clock'] = to_iso(heart_clock)
    return {'SET': 'last_heart_loss_at = :clock'}


class LearnerRepository:
    """Repository for the learners table (one item per learner)."""

    def __init__(self, db: Optional[DynamoDBClient] = None, max_hearts: Optional[int] = None):
        """
        Args:
            db: DynamoDB client wrapper (the shared client when omitted)
            max_hearts: Hearts given to new learners
        """
        self.db = db or get_db_client()
        self.max_hearts = max_hearts if max_hearts is not None else get_settings().HEARTS_MAX

    @property
    def table(self):
        return self.db.learners_table

    def create_learner(self, learner_id: str, now: Optional[datetime] = None) -> LearnerAggregate:
        """
        Create the aggregate (idempotent).

        Existing learners are returned unchanged.
        """
        now = now or utcnow()
        try:
            response = self.table.update_item(
                Key={'learner_id': learner_id},
                UpdateExpression="""
                    SET
                        total_xp = if_not_exists(total_xp, :zero),
                        hearts = if_not_exists(hearts, :hearts),
                        current_streak = if_not_exists(current_streak, :zero),
                        longest_streak = if_not_exists(longest_streak, :zero),
                        created_at = if_not_exists(created_at, :now)
                """,
                ExpressionAttributeValues={
                    ':zero': 0,
                    ':hearts': self.max_hearts,
                    ':now': to_iso(now),
                },
                ReturnValues='ALL_NEW'
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error creating learner {learner_id}: {e}")
            raise StorageUnavailable(f"Could not create learner {learner_id}", cause=e)

        logger.info(f"Created/retrieved learner {learner_id}")
        return learner_from_item(response['Attributes'])

    def find_learner(self, learner_id: str) -> Optional[LearnerAggregate]:
        try:
            response = self.table.get_item(Key={'learner_id': learner_id}, ConsistentRead=True)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error reading learner {learner_id}: {e}")
            raise StorageUnavailable(f"Could not read learner {learner_id}", cause=e)

        item = response.get('Item')
        return learner_from_item(item) if item else None

    def get_learner(self, learner_id: str) -> LearnerAggregate:
        learner = self.find_learner(learner_id)
        if learner is None:
            raise LearnerNotFound(learner_id)
        return learner

    def _conditional_update(self, learner_id: str, kwargs: Dict[str, Any]) -> bool:
        """Run one conditional update, False when the condition did not hold"""
        try:
            self.table.update_item(Key={'learner_id': learner_id}, **kwargs)
            return True
        except ClientError as e:
            if is_conditional_failure(e):
                logger.debug(f"Conditional update lost for learner {learner_id}")
                return False
            logger.error(f"Error updating learner {learner_id}: {e}")
            raise StorageUnavailable(f"Could not update learner {learner_id}", cause=e)
        except BotoCoreError as e:
            logger.error(f"Error updating learner {learner_id}: {e}")
            raise StorageUnavailable(f"Could not update learner {learner_id}", cause=e)

    def set_hearts(
        self,
        learner_id: str,
        hearts: int,
        heart_clock: Optional[datetime],
        expected_hearts: int,
        expected_clock: Optional[datetime]
    ) -> bool:
        """
        Compare-and-set hearts and the regeneration clock.

        Returns False when another writer changed either value since it was
        read (or the learner does not exist); the caller re-reads and retries.
        """
        values: Dict[str, Any] = {':hearts': hearts, ':expected_hearts': expected_hearts}
        condition = f"hearts = :expected_hearts AND {_clock_condition(expected_clock, values)}"
        clock = _clock_update(heart_clock, values)

        expression = "SET hearts = :hearts"
        if 'SET' in clock:
            expression += f", {clock['SET']}"
        else:
            expression += f" REMOVE {clock['REMOVE']}"

        return self._conditional_update(learner_id, {
            'UpdateExpression': expression,
            'ConditionExpression': condition,
            'ExpressionAttributeValues': values,
        })

    def grant_ad_heart(
        self,
        learner_id: str,
        hearts: int,
        heart_clock: Optional[datetime],
        expected_hearts: int,
        expected_clock: Optional[datetime],
        watched_at: datetime,
        cooldown_start: datetime
    ) -> bool:
        """
        Hearts update for the ad path, only if no ad was watched after
        `cooldown_start`. One grant per cooldown window even under races.
        """
        values: Dict[str, Any] = {
            ':hearts': hearts,
            ':expected_hearts': expected_hearts,
            ':watched_at': to_iso(watched_at),
            ':cooldown_start': to_iso(cooldown_start),
        }
        condition = (
            f"hearts = :expected_hearts AND {_clock_condition(expected_clock, values)} "
            "AND (attribute_not_exists(last_ad_watch_at) OR last_ad_watch_at <= :cooldown_start)"
        )
        clock = _clock_update(heart_clock, values)

        expression = "SET hearts = :hearts, last_ad_watch_at = :watched_at"
        if 'SET' in clock:
            expression += f", {clock['SET']}"
        else:
            expression += f" REMOVE {clock['REMOVE']}"

        return self._conditional_update(learner_id, {
            'UpdateExpression': expression,
            'ConditionExpression': condition,
            'ExpressionAttributeValues': values,
        })

    def update_streak(
        self,
        learner_id: str,
        current_streak: int,
        longest_streak: int,
        activity_date: date,
        expected_last_date: Optional[date]
    ) -> bool:
        """Compare-and-set of the streak counters against the last activity date read"""
        values: Dict[str, Any] = {
            ':current': current_streak,
            ':longest': longest_streak,
            ':today': activity_date.isoformat(),
        }
        if expected_last_date is None:
            condition = "attribute_exists(learner_id) AND attribute_not_exists(last_activity_date)"
        else:
            condition = "last_activity_date = :expected_date"
            values[':expected_date'] = expected_last_date.isoformat()

        return self._conditional_update(learner_id, {
            'UpdateExpression': (
                "SET current_streak = :current, longest_streak = :longest, "
                "last_activity_date = :today"
            ),
            'ConditionExpression': condition,
            'ExpressionAttributeValues': values,
        })
