"""Flashcard review state - Data Access Layer"""
from typing import Optional, Dict, Any, List
import logging

from botocore.exceptions import BotoCoreError, ClientError

from progression.dynamo import (
    DynamoDBClient,
    card_sk,
    dynamodb_dict,
    from_iso,
    get_db_client,
    is_conditional_failure,
    learner_pk,
    python_dict,
    query_all,
    to_iso,
)
from progression.exceptions import ConcurrentModification, StorageUnavailable
from progression.schemas import FlashcardReviewState

logger = logging.getLogger(__name__)


def state_from_item(item: Dict[str, Any]) -> FlashcardReviewState:
    item = python_dict(item)
    return FlashcardReviewState(
        id=item['id'],
        learner_id=item['learner_id'],
        card_id=item['card_id'],
        ease_factor=float(item['ease_factor']),
        interval=item['interval'],
        repetitions=item['repetitions'],
        next_review_at=from_iso(item['next_review_at']),
        last_reviewed_at=from_iso(item.get('last_reviewed_at')),
        version=item.get('version', 0),
    )


class ReviewRepository:
    """One item per (learner, card), created lazily on first review"""

    def __init__(self, db: Optional[DynamoDBClient] = None):
        self.db = db or get_db_client()

    @property
    def table(self):
        return self.db.progression_table

    def get_state(self, learner_id: str, card_id: str) -> Optional[FlashcardReviewState]:
        try:
            response = self.table.get_item(
                Key={'PK': learner_pk(learner_id), 'SK': card_sk(card_id)},
                ConsistentRead=True
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error reading card {card_id} for {learner_id}: {e}")
            raise StorageUnavailable(f"Could not read review state of card {card_id}", cause=e)

        item = response.get('Item')
        return state_from_item(item) if item else None

    def save_state(self, state: FlashcardReviewState, expected_version: int) -> None:
        """
        Write `state` if the stored version is still `expected_version`
        (0 means the row must not exist yet).

        Raises:
            ConcurrentModification: another review was saved first
        """
        item = dynamodb_dict({
            'PK': learner_pk(state.learner_id),
            'SK': card_sk(state.card_id),
            'id': state.id,
            'learner_id': state.learner_id,
            'card_id': state.card_id,
            'ease_factor': state.ease_factor,
            'interval': state.interval,
            'repetitions': state.repetitions,
            'next_review_at': to_iso(state.next_review_at),
            'last_reviewed_at': to_iso(state.last_reviewed_at),
            'version': state.version,
        })
        item = {k: v for k, v in item.items() if v is not None}

        kwargs: Dict[str, Any] = {'Item': item}
        if expected_version == 0:
            kwargs['ConditionExpression'] = "attribute_not_exists(PK)"
        else:
            kwargs['ConditionExpression'] = "#version = :expected_version"
            kwargs['ExpressionAttributeNames'] = {'#version': 'version'}
            kwargs['ExpressionAttributeValues'] = {':expected_version': expected_version}

        try:
            self.table.put_item(**kwargs)
        except ClientError as e:
            if is_conditional_failure(e):
                logger.warning(f"Version mismatch on card {state.card_id}: expected {expected_version}")
                raise ConcurrentModification(f"Card {state.card_id} was reviewed concurrently, please retry")
            logger.error(f"Error saving card {state.card_id}: {e}")
            raise StorageUnavailable(f"Could not save review state of card {state.card_id}", cause=e)
        except BotoCoreError as e:
            logger.error(f"Error saving card {state.card_id}: {e}")
            raise StorageUnavailable(f"Could not save review state of card {state.card_id}", cause=e)

    def list_states(self, learner_id: str) -> List[FlashcardReviewState]:
        try:
            items = query_all(self.table, learner_pk(learner_id), "CARD#", consistent=True)
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error listing cards for {learner_id}: {e}")
            raise StorageUnavailable(f"Could not read review states of learner {learner_id}", cause=e)
        return [state_from_item(item) for item in items]
