"""
DynamoDB access for the progression engine

Two tables:
- learners: one item per learner (Learner Aggregate), hash key learner_id
- progression: single-table PK/SK design for XP events, achievement unlocks,
  the achievement catalog, leaderboard entries, rank locks and flashcard
  review states

Key layout (progression table):

    PK                                   SK
    LEARNER#<learnerId>                  XP#<eventId>
    LEARNER#<learnerId>                  UNLOCK#<achievementId>
    LEARNER#<learnerId>                  CARD#<cardId>
    CATALOG#ACHIEVEMENTS                 CODE#<code>
    BOARD#<period>#<periodStart>#<lang>  LEARNER#<learnerId>
    BOARD#<period>#<periodStart>#<lang>  LOCK
"""
import boto3
from boto3.dynamodb.conditions import Key
from boto3.dynamodb.types import TypeSerializer, TypeDeserializer
from botocore.exceptions import ClientError
from typing import Optional, Dict, Any, List
from datetime import date, datetime, timezone, tzinfo
from decimal import Decimal
from zoneinfo import ZoneInfo
import logging

from progression.config import Settings, get_settings

logger = logging.getLogger(__name__)

ALL_LANGUAGES = "ALL"

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


class DynamoDBClient:
    """DynamoDB client with lazy initialization"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._dynamodb = None
        self._client = None
        self._learners_table = None
        self._progression_table = None

    def _session_kwargs(self) -> Dict[str, Any]:
        kwargs = {
            'region_name': self.settings.AWS_REGION,
        }

        # Only use endpoint_url for LocalStack
        if self.settings.DYNAMODB_ENDPOINT:
            kwargs['endpoint_url'] = self.settings.DYNAMODB_ENDPOINT

        # Explicit credentials only in LocalStack mode, otherwise boto3 resolves the IAM role
        if self.settings.DYNAMODB_ENDPOINT and self.settings.AWS_ACCESS_KEY_ID:
            kwargs['aws_access_key_id'] = self.settings.AWS_ACCESS_KEY_ID
            kwargs['aws_secret_access_key'] = self.settings.AWS_SECRET_ACCESS_KEY
        return kwargs

    @property
    def dynamodb(self):
        """Lazy initialization of DynamoDB resource"""
        if self._dynamodb is None:
            kwargs = self._session_kwargs()
            logger.info(
                f"DynamoDB config: region={kwargs['region_name']}, "
                f"endpoint={kwargs.get('endpoint_url', 'AWS')}"
            )
            self._dynamodb = boto3.resource('dynamodb', **kwargs)
        return self._dynamodb

    @property
    def client(self):
        """Low-level client, used for TransactWriteItems"""
        if self._client is None:
            self._client = boto3.client('dynamodb', **self._session_kwargs())
        return self._client

    @property
    def learners_table(self):
        if self._learners_table is None:
            self._learners_table = self.dynamodb.Table(self.settings.DYNAMODB_LEARNERS_TABLE)
        return self._learners_table

    @property
    def progression_table(self):
        if self._progression_table is None:
            self._progression_table = self.dynamodb.Table(self.settings.DYNAMODB_PROGRESSION_TABLE)
        return self._progression_table

    def create_tables_if_not_exist(self) -> None:
        """Create both tables if missing (local development and tests)"""
        definitions = [
            {
                'TableName': self.settings.DYNAMODB_LEARNERS_TABLE,
                'KeySchema': [{'AttributeName': 'learner_id', 'KeyType': 'HASH'}],
                'AttributeDefinitions': [{'AttributeName': 'learner_id', 'AttributeType': 'S'}],
                'BillingMode': 'PAY_PER_REQUEST'
            },
            {
                'TableName': self.settings.DYNAMODB_PROGRESSION_TABLE,
                'KeySchema': [
                    {'AttributeName': 'PK', 'KeyType': 'HASH'},
                    {'AttributeName': 'SK', 'KeyType': 'RANGE'}
                ],
                'AttributeDefinitions': [
                    {'AttributeName': 'PK', 'AttributeType': 'S'},
                    {'AttributeName': 'SK', 'AttributeType': 'S'}
                ],
                'BillingMode': 'PAY_PER_REQUEST'
            },
        ]

        for definition in definitions:
            table_name = definition['TableName']
            try:
                self.client.describe_table(TableName=table_name)
                logger.info(f"Table {table_name} already exists")
            except ClientError as e:
                if e.response['Error']['Code'] != 'ResourceNotFoundException':
                    raise
                self.client.create_table(**definition)
                logger.info(f"Created table {table_name}")


_db_client: Optional[DynamoDBClient] = None


def get_db_client() -> DynamoDBClient:
    """Returns the shared DynamoDB client (singleton)"""
    global _db_client
    if _db_client is None:
        _db_client = DynamoDBClient()
    return _db_client


# ============= KEY BUILDERS =============

def learner_pk(learner_id: str) -> str:
    return f"LEARNER#{learner_id}"


def xp_sk(event_id: str) -> str:
    return f"XP#{event_id}"


def unlock_sk(achievement_id: str) -> str:
    return f"UNLOCK#{achievement_id}"


def card_sk(card_id: str) -> str:
    return f"CARD#{card_id}"


CATALOG_PK = "CATALOG#ACHIEVEMENTS"


def catalog_sk(code: str) -> str:
    return f"CODE#{code}"


def board_pk(period: str, period_start: datetime, language_id: Optional[str] = None) -> str:
    """
    Partition key of one leaderboard partition

    Example:
        >>> board_pk("weekly", datetime(2025, 11, 16, tzinfo=timezone.utc), "es")
        "BOARD#weekly#2025-11-16T00:00:00.000000+00:00#es"
    """
    return f"BOARD#{period}#{to_iso(period_start)}#{language_id or ALL_LANGUAGES}"


def board_sk(learner_id: str) -> str:
    return f"LEARNER#{learner_id}"


BOARD_LOCK_SK = "LOCK"


# ============= HELPER FUNCTIONS =============

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def resolve_timezone(tz_name: str) -> tzinfo:
    return timezone.utc if tz_name.upper() == "UTC" else ZoneInfo(tz_name)


def local_date(value: datetime, tz_name: str = "UTC") -> date:
    """Calendar date of `value` in `tz_name`"""
    return ensure_aware(value).astimezone(resolve_timezone(tz_name)).date()


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """UTC ISO-8601 with fixed microsecond precision, so stored strings sort chronologically"""
    if value is None:
        return None
    return ensure_aware(value).astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return ensure_aware(datetime.fromisoformat(value.replace('Z', '+00:00')))


def dynamodb_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """Convert Python dict to DynamoDB compatible dict (handles Decimal)"""
    return {k: dynamodb_value(v) for k, v in data.items()}


def dynamodb_value(value: Any) -> Any:
    """Convert Python value to DynamoDB compatible value"""
    if isinstance(value, float):
        return Decimal(str(value))
    elif isinstance(value, dict):
        return {k: dynamodb_value(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [dynamodb_value(item) for item in value]
    return value


def python_dict(data: Dict[str, Any]) -> Dict[str, Any]:
    """Convert DynamoDB dict to Python dict (handles Decimal)"""
    return {k: python_value(v) for k, v in data.items()}


def python_value(value: Any) -> Any:
    """Convert DynamoDB value to Python value"""
    if isinstance(value, Decimal):
        return int(value) if value % 1 == 0 else float(value)
    elif isinstance(value, dict):
        return {k: python_value(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [python_value(item) for item in value]
    return value


def serialize_item(data: Dict[str, Any]) -> Dict[str, Any]:
    """Python dict -> low-level attribute map (for the plain client)"""
    return {k: _serializer.serialize(v) for k, v in dynamodb_dict(data).items() if v is not None}


def deserialize_item(data: Dict[str, Any]) -> Dict[str, Any]:
    return python_dict({k: _deserializer.deserialize(v) for k, v in data.items()})


def is_conditional_failure(error: ClientError) -> bool:
    return error.response.get('Error', {}).get('Code') == 'ConditionalCheckFailedException'


def is_transaction_cancelled(error: ClientError) -> bool:
    return error.response.get('Error', {}).get('Code') == 'TransactionCanceledException'


def query_all(table, pk: str, sk_prefix: Optional[str] = None, consistent: bool = False) -> List[Dict[str, Any]]:
    """
    Query every item of one partition, following LastEvaluatedKey.

    Example:
        query_all(db.progression_table, learner_pk("u1"), "XP#")
    """
    condition = Key('PK').eq(pk)
    if sk_prefix:
        condition = condition & Key('SK').begins_with(sk_prefix)

    kwargs = {'KeyConditionExpression': condition, 'ConsistentRead': consistent}
    items = []
    while True:
        response = table.query(**kwargs)
        items.extend(python_dict(item) for item in response.get('Items', []))
        last_key = response.get('LastEvaluatedKey')
        if not last_key:
            return items
        kwargs['ExclusiveStartKey'] = last_key
