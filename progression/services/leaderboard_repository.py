"""
Leaderboard - DynamoDB Operations

One partition per (period, periodStart, language):

    PK: BOARD#<period>#<periodStart>#<lang|ALL>    SK: LEARNER#<learnerId>
    PK: BOARD#<period>#<periodStart>#<lang|ALL>    SK: LOCK

Entries are upserted with ADD on xp; rank stays 0 until the partition is
re-ranked. The LOCK item is a lease that serializes re-rankers.
"""
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging
import uuid

from botocore.exceptions import BotoCoreError, ClientError

from progression.dynamo import (
    ALL_LANGUAGES,
    BOARD_LOCK_SK,
    DynamoDBClient,
    board_pk,
    board_sk,
    from_iso,
    get_db_client,
    is_conditional_failure,
    python_dict,
    query_all,
    to_iso,
)
from progression.exceptions import StorageUnavailable
from progression.schemas import LeaderboardEntry

logger = logging.getLogger(__name__)


def entry_from_item(item: Dict[str, Any]) -> LeaderboardEntry:
    item = python_dict(item)
    language_id = item.get('language_id')
    return LeaderboardEntry(
        id=item['id'],
        learner_id=item['learner_id'],
        period=item['period'],
        period_start=from_iso(item['period_start']),
        period_end=from_iso(item['period_end']),
        language_id=None if language_id in (None, ALL_LANGUAGES) else language_id,
        xp=item.get('xp', 0),
        rank=item.get('rank', 0),
        created_at=from_iso(item['created_at']),
    )


class LeaderboardRepository:
    def __init__(self, db: Optional[DynamoDBClient] = None):
        self.db = db or get_db_client()

    @property
    def table(self):
        return self.db.progression_table

    def upsert(
        self,
        learner_id: str,
        period: str,
        period_start: datetime,
        period_end: datetime,
        language_id: Optional[str],
        xp: int,
        now: datetime
    ) -> LeaderboardEntry:
        """Create the entry with xp, or increment an existing one by xp"""
        pk = board_pk(period, period_start, language_id)
        try:
            response = self.table.update_item(
                Key={'PK': pk, 'SK': board_sk(learner_id)},
                UpdateExpression="""
                    SET
                        #id = if_not_exists(#id, :id),
                        learner_id = :learner_id,
                        #period = :period,
                        period_start = :period_start,
                        period_end = :period_end,
                        language_id = :language_id,
                        #rank = if_not_exists(#rank, :zero),
                        created_at = if_not_exists(created_at, :now)
                    ADD xp :xp
                """,
                ExpressionAttributeNames={
                    '#id': 'id',
                    '#period': 'period',
                    '#rank': 'rank',
                },
                ExpressionAttributeValues={
                    ':id': str(uuid.uuid4()),
                    ':learner_id': learner_id,
                    ':period': period,
                    ':period_start': to_iso(period_start),
                    ':period_end': to_iso(period_end),
                    ':language_id': language_id or ALL_LANGUAGES,
                    ':zero': 0,
                    ':now': to_iso(now),
                    ':xp': xp,
                },
                ReturnValues='ALL_NEW'
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error upserting leaderboard entry {pk} / {learner_id}: {e}")
            raise StorageUnavailable(f"Could not update leaderboard {pk}", cause=e)

        return entry_from_item(response['Attributes'])

    def list_partition(self, pk: str) -> List[LeaderboardEntry]:
        try:
            items = query_all(self.table, pk, "LEARNER#", consistent=True)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error reading leaderboard {pk}: {e}")
            raise StorageUnavailable(f"Could not read leaderboard {pk}", cause=e)
        return [entry_from_item(item) for item in items]

    def get_entry(self, pk: str, learner_id: str) -> Optional[LeaderboardEntry]:
        try:
            response = self.table.get_item(Key={'PK': pk, 'SK': board_sk(learner_id)})
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error reading leaderboard entry {pk} / {learner_id}: {e}")
            raise StorageUnavailable(f"Could not read leaderboard {pk}", cause=e)

        item = response.get('Item')
        return entry_from_item(item) if item else None

    def set_rank(self, pk: str, learner_id: str, rank: int) -> None:
        try:
            self.table.update_item(
                Key={'PK': pk, 'SK': board_sk(learner_id)},
                UpdateExpression="SET #rank = :rank",
                ConditionExpression="attribute_exists(PK)",
                ExpressionAttributeNames={'#rank': 'rank'},
                ExpressionAttributeValues={':rank': rank}
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error writing rank for {pk} / {learner_id}: {e}")
            raise StorageUnavailable(f"Could not write rank in {pk}", cause=e)

    # ============= PARTITION LOCK =============

    def acquire_lock(self, pk: str, owner: str, now_epoch: int, ttl_seconds: int) -> bool:
        """Take the lease unless someone else holds an unexpired one"""
        try:
            self.table.put_item(
                Item={
                    'PK': pk,
                    'SK': BOARD_LOCK_SK,
                    'lock_owner': owner,
                    'expires_at': now_epoch + ttl_seconds,
                },
                ConditionExpression="attribute_not_exists(PK) OR expires_at < :now",
                ExpressionAttributeValues={':now': now_epoch}
            )
            return True
        except ClientError as e:
            if is_conditional_failure(e):
                return False
            logger.error(f"Error acquiring rank lock on {pk}: {e}")
            raise StorageUnavailable(f"Could not lock leaderboard {pk}", cause=e)

    def release_lock(self, pk: str, owner: str) -> None:
        try:
            self.table.delete_item(
                Key={'PK': pk, 'SK': BOARD_LOCK_SK},
                ConditionExpression="lock_owner = :owner",
                ExpressionAttributeValues={':owner': owner}
            )
        except ClientError as e:
            if is_conditional_failure(e):
                # Lease expired and was taken over, nothing to release
                logger.warning(f"Rank lock on {pk} no longer held by {owner}")
                return
            logger.error(f"Error releasing rank lock on {pk}: {e}")
            raise StorageUnavailable(f"Could not unlock leaderboard {pk}", cause=e)
