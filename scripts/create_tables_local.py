#!/usr/bin/env python3
"""
Create the progression DynamoDB tables (LocalStack for local development)

Usage:
    DYNAMODB_ENDPOINT=http://localhost:4566 python scripts/create_tables_local.py
"""
import logging

from progression.config import configure_logging
from progression.dynamo import DynamoDBClient

logger = logging.getLogger(__name__)


def create_tables() -> None:
    """Create learners and progression tables if missing"""
    db = DynamoDBClient()
    logger.info(f"Using endpoint {db.settings.DYNAMODB_ENDPOINT or 'AWS'}")
    db.create_tables_if_not_exist()
    logger.info("✅ All tables ready")


if __name__ == "__main__":
    configure_logging()
    create_tables()
