"""XP Events - Data Access Layer"""
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

from botocore.exceptions import BotoCoreError, ClientError

from progression.dynamo import (
    DynamoDBClient,
    from_iso,
    get_db_client,
    is_transaction_cancelled,
    learner_pk,
    python_dict,
    query_all,
    serialize_item,
    to_iso,
    xp_sk,
)
from progression.exceptions import StorageUnavailable
from progression.schemas import XPEvent

logger = logging.getLogger(__name__)


def event_from_item(item: Dict[str, Any]) -> XPEvent:
    item = python_dict(item)
    return XPEvent(
        id=item['id'],
        learner_id=item['learner_id'],
        amount=item['amount'],
        source=item['source'],
        source_id=item.get('source_id'),
        description=item.get('description'),
        created_at=from_iso(item['created_at']),
    )


class XPRepository:
    """
    Append-only XP event log plus the cached total on the learner item.

    Both writes go through one TransactWriteItems call so the event and the
    running total can never be observed apart.
    """

    def __init__(self, db: Optional[DynamoDBClient] = None):
        self.db = db or get_db_client()

    def append(
        self,
        event: XPEvent,
        hearts: Optional[int] = None,
        heart_clock: Optional[datetime] = None,
        expected_hearts: Optional[int] = None,
        expected_clock: Optional[datetime] = None,
        min_balance: Optional[int] = None,
        extra_items: Optional[List[Dict[str, Any]]] = None
    ) -> bool:
        """
        Write the event and ADD its amount to total_xp atomically.

        Args:
            event: Event to insert (its id is the dedup key)
            hearts: When set, hearts are written in the same transaction
                (heart purchases), guarded by expected_hearts / expected_clock
            heart_clock: Regeneration clock written with `hearts` (None removes it)
            min_balance: Required total_xp before the write (purchases)
            extra_items: New progression-table rows written in the same
                transaction, each guarded by attribute_not_exists(PK)

        Returns:
            True if written, False if the transaction was cancelled (event id
            already used, an extra row exists, learner missing or a guard
            failed)

        Raises:
            StorageUnavailable: any other storage failure
        """
        settings = self.db.settings
        event_item = {
            'PK': learner_pk(event.learner_id),
            'SK': xp_sk(event.id),
            'id': event.id,
            'learner_id': event.learner_id,
            'amount': event.amount,
            'source': event.source,
            'source_id': event.source_id,
            'description': event.description,
            'created_at': to_iso(event.created_at),
        }

        values: Dict[str, Any] = {':amount': event.amount}
        conditions = ["attribute_exists(learner_id)"]
        expression = "ADD total_xp :amount"

        if min_balance is not None:
            values[':min_balance'] = min_balance
            conditions.append("total_xp >= :min_balance")

        if hearts is not None:
            values[':hearts'] = hearts
            values[':expected_hearts'] = expected_hearts
            conditions.append("hearts = :expected_hearts")
            if expected_clock is None:
                conditions.append("attribute_not_exists(last_heart_loss_at)")
            else:
                values[':expected_clock'] = to_iso(expected_clock)
                conditions.append("last_heart_loss_at = :expected_clock")

            if heart_clock is None:
                expression = f"SET hearts = :hearts REMOVE last_heart_loss_at {expression}"
            else:
                values[':clock'] = to_iso(heart_clock)
                expression = f"SET hearts = :hearts, last_heart_loss_at = :clock {expression}"

        transact_items = [
            {
                'Put': {
                    'TableName': settings.DYNAMODB_PROGRESSION_TABLE,
                    'Item': serialize_item(item),
                    'ConditionExpression': 'attribute_not_exists(PK)',
                }
            }
            for item in [event_item] + list(extra_items or [])
        ]
        transact_items.append({
            'Update': {
                'TableName': settings.DYNAMODB_LEARNERS_TABLE,
                'Key': serialize_item({'learner_id': event.learner_id}),
                'UpdateExpression': expression,
                'ConditionExpression': ' AND '.join(conditions),
                'ExpressionAttributeValues': serialize_item(values),
            }
        })

        try:
            self.db.client.transact_write_items(TransactItems=transact_items)
        except ClientError as e:
            if is_transaction_cancelled(e):
                logger.warning(f"XP transaction cancelled for event {event.id} (learner {event.learner_id})")
                return False
            logger.error(f"Error appending XP event {event.id}: {e}")
            raise StorageUnavailable(f"Could not record XP for learner {event.learner_id}", cause=e)
        except BotoCoreError as e:
            logger.error(f"Error appending XP event {event.id}: {e}")
            raise StorageUnavailable(f"Could not record XP for learner {event.learner_id}", cause=e)

        return True

    def get_event(self, learner_id: str, event_id: str) -> Optional[XPEvent]:
        try:
            response = self.db.progression_table.get_item(
                Key={'PK': learner_pk(learner_id), 'SK': xp_sk(event_id)},
                ConsistentRead=True
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error reading XP event {event_id}: {e}")
            raise StorageUnavailable(f"Could not read XP event {event_id}", cause=e)

        item = response.get('Item')
        return event_from_item(item) if item else None

    def list_events(self, learner_id: str) -> List[XPEvent]:
        """All events of a learner, newest first"""
        try:
            items = query_all(self.db.progression_table, learner_pk(learner_id), "XP#", consistent=True)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error listing XP events for learner {learner_id}: {e}")
            raise StorageUnavailable(f"Could not read XP history for learner {learner_id}", cause=e)

        events = [event_from_item(item) for item in items]
        events.sort(key=lambda event: (event.created_at, event.id), reverse=True)
        return events
