"""
Shared fixtures: DynamoDB mocked with moto
"""
import pytest
from datetime import datetime, timezone
from moto import mock_aws

from progression.config import Settings
from progression.dynamo import DynamoDBClient
from progression.engine import ProgressionEngine


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mock AWS credentials for moto"""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.delenv("DYNAMODB_ENDPOINT", raising=False)


@pytest.fixture
def settings(aws_credentials):
    """Test settings, no lock back-off so busy partitions fail fast"""
    return Settings(
        AWS_REGION="us-east-1",
        DYNAMODB_ENDPOINT=None,
        DYNAMODB_LEARNERS_TABLE="test-learners",
        DYNAMODB_PROGRESSION_TABLE="test-progression",
        RANK_LOCK_ATTEMPTS=2,
        RANK_LOCK_BACKOFF_SECONDS=0,
    )


@pytest.fixture
def db(settings):
    """DynamoDB client with both tables created"""
    with mock_aws():
        client = DynamoDBClient(settings)
        client.create_tables_if_not_exist()
        yield client


@pytest.fixture
def engine(db):
    return ProgressionEngine(db)


@pytest.fixture
def seeded_engine(engine):
    """Engine with the default achievement catalog loaded"""
    engine.achievements.seed_catalog()
    return engine


@pytest.fixture
def now():
    return datetime(2025, 11, 19, 15, 0, tzinfo=timezone.utc)
