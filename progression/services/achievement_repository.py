"""
Achievements - DynamoDB Operations

Catalog rows live in one partition, unlocks are one item per
(learner, achievement):

    PK: CATALOG#ACHIEVEMENTS    SK: CODE#<code>
    PK: LEARNER#<learnerId>     SK: UNLOCK#<achievementId>

The unlock insert is a conditional put, so the uniqueness of
(learner, achievement) is enforced by the store rather than by a prior read.
"""
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple
import logging
import uuid

from botocore.exceptions import BotoCoreError, ClientError

from progression.dynamo import (
    CATALOG_PK,
    DynamoDBClient,
    catalog_sk,
    dynamodb_dict,
    from_iso,
    get_db_client,
    is_conditional_failure,
    learner_pk,
    python_dict,
    query_all,
    to_iso,
    unlock_sk,
    utcnow,
)
from progression.exceptions import StorageUnavailable
from progression.schemas import AchievementUnlock
from progression.schemas_achievements import AchievementDefinition, parse_criteria

logger = logging.getLogger(__name__)


def definition_from_item(item: Dict[str, Any]) -> AchievementDefinition:
    item = python_dict(item)
    return AchievementDefinition(
        id=item['id'],
        code=item['code'],
        name=item['name'],
        description=item.get('description', ''),
        icon=item.get('icon'),
        criteria=parse_criteria(item.get('criteria')),
        xp_reward=item.get('xp_reward', 0),
        is_active=item.get('is_active', True),
    )


def unlock_from_item(item: Dict[str, Any]) -> AchievementUnlock:
    return AchievementUnlock(
        id=item['id'],
        learner_id=item['learner_id'],
        achievement_id=item['achievement_id'],
        unlocked_at=from_iso(item['unlocked_at']),
    )


def unlock_to_item(unlock: AchievementUnlock) -> Dict[str, Any]:
    return {
        'PK': learner_pk(unlock.learner_id),
        'SK': unlock_sk(unlock.achievement_id),
        'id': unlock.id,
        'learner_id': unlock.learner_id,
        'achievement_id': unlock.achievement_id,
        'unlocked_at': to_iso(unlock.unlocked_at),
    }


class AchievementRepository:
    def __init__(self, db: Optional[DynamoDBClient] = None):
        self.db = db or get_db_client()

    @property
    def table(self):
        return self.db.progression_table

    # ============= CATALOG =============

    def seed_definition(self, data: Dict[str, Any]) -> AchievementDefinition:
        """
        Create or refresh one catalog row by code.

        The id is assigned once and never changes, unlock rows reference it.
        """
        code = data['code']
        try:
            response = self.table.update_item(
                Key={'PK': CATALOG_PK, 'SK': catalog_sk(code)},
                UpdateExpression="""
                    SET
                        #id = if_not_exists(#id, :id),
                        #code = :code,
                        #name = :name,
                        #description = :description,
                        #icon = :icon,
                        #criteria = :criteria,
                        xp_reward = :xp_reward,
                        is_active = :is_active,
                        created_at = if_not_exists(created_at, :now)
                """,
                ExpressionAttributeNames={
                    '#id': 'id',
                    '#code': 'code',
                    '#name': 'name',
                    '#description': 'description',
                    '#icon': 'icon',
                    '#criteria': 'criteria',
                },
                ExpressionAttributeValues=dynamodb_dict({
                    ':id': data.get('id') or str(uuid.uuid4()),
                    ':code': code,
                    ':name': data['name'],
                    ':description': data.get('description', ''),
                    ':icon': data.get('icon'),
                    ':criteria': data.get('criteria'),
                    ':xp_reward': data.get('xp_reward', 0),
                    ':is_active': data.get('is_active', True),
                    ':now': to_iso(utcnow()),
                }),
                ReturnValues='ALL_NEW'
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error seeding achievement {code}: {e}")
            raise StorageUnavailable(f"Could not seed achievement {code}", cause=e)

        return definition_from_item(response['Attributes'])

    def list_definitions(self, active_only: bool = True) -> List[AchievementDefinition]:
        try:
            items = query_all(self.table, CATALOG_PK, "CODE#")
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error listing achievements: {e}")
            raise StorageUnavailable("Could not read achievement catalog", cause=e)

        definitions = [definition_from_item(item) for item in items]
        if active_only:
            definitions = [d for d in definitions if d.is_active]
        return definitions

    def get_by_code(self, code: str) -> Optional[AchievementDefinition]:
        try:
            response = self.table.get_item(Key={'PK': CATALOG_PK, 'SK': catalog_sk(code)})
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error reading achievement {code}: {e}")
            raise StorageUnavailable(f"Could not read achievement {code}", cause=e)

        item = response.get('Item')
        return definition_from_item(item) if item else None

    # ============= UNLOCKS =============

    @staticmethod
    def new_unlock(
        learner_id: str,
        achievement_id: str,
        unlocked_at: Optional[datetime] = None
    ) -> AchievementUnlock:
        return AchievementUnlock(
            id=str(uuid.uuid4()),
            learner_id=learner_id,
            achievement_id=achievement_id,
            unlocked_at=unlocked_at or utcnow(),
        )

    def insert_unlock(
        self,
        learner_id: str,
        achievement_id: str,
        unlocked_at: Optional[datetime] = None
    ) -> Tuple[AchievementUnlock, bool]:
        """
        Insert-or-ignore the unlock row.

        Returns:
            (unlock, created) where created is False if the row already
            existed; the stored row is returned in that case
        """
        unlock = self.new_unlock(learner_id, achievement_id, unlocked_at)
        key = {'PK': learner_pk(learner_id), 'SK': unlock_sk(achievement_id)}

        try:
            self.table.put_item(
                Item=unlock_to_item(unlock),
                ConditionExpression='attribute_not_exists(PK)'
            )
        except ClientError as e:
            if not is_conditional_failure(e):
                logger.error(f"Error unlocking achievement {achievement_id} for {learner_id}: {e}")
                raise StorageUnavailable(f"Could not unlock achievement {achievement_id}", cause=e)

            logger.info(f"Achievement {achievement_id} already unlocked by {learner_id}")
            response = self.table.get_item(Key=key, ConsistentRead=True)
            return unlock_from_item(response['Item']), False
        except BotoCoreError as e:
            logger.error(f"Error unlocking achievement {achievement_id} for {learner_id}: {e}")
            raise StorageUnavailable(f"Could not unlock achievement {achievement_id}", cause=e)

        logger.info(f"Achievement {achievement_id} unlocked by learner {learner_id}")
        return unlock, True

    def list_unlocks(self, learner_id: str) -> List[AchievementUnlock]:
        try:
            items = query_all(self.table, learner_pk(learner_id), "UNLOCK#", consistent=True)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error listing unlocks for {learner_id}: {e}")
            raise StorageUnavailable(f"Could not read achievements of learner {learner_id}", cause=e)

        return [unlock_from_item(item) for item in items]
