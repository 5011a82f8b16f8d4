"""
Configuration settings for the progression engine
"""
import logging
from functools import lru_cache
from typing import Optional
from pydantic_settings import BaseSettings
from pydantic import ConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""
    
    # App
    APP_NAME: str = "Progression Engine"
    VERSION: str = "1.0.0"
    ENVIRONMENT: str = "local"
    LOG_LEVEL: str = "INFO"
    
    # AWS
    AWS_REGION: str = "us-east-1"
    AWS_ACCESS_KEY_ID: Optional[str] = None  # Only for LocalStack, ECS uses IAM roles
    AWS_SECRET_ACCESS_KEY: Optional[str] = None  # Only for LocalStack, ECS uses IAM roles
    
    # DynamoDB
    DYNAMODB_ENDPOINT: Optional[str] = None  # None uses AWS, set for LocalStack
    DYNAMODB_LEARNERS_TABLE: str = "progression-dev-learners"
    DYNAMODB_PROGRESSION_TABLE: str = "progression-dev-progression"  # single-table: xp, unlocks, boards, cards
    
    # Hearts
    HEARTS_MAX: int = 5
    HEARTS_REGEN_MINUTES: int = 30
    HEARTS_AD_COOLDOWN_MINUTES: int = 60
    HEARTS_XP_COST: int = 100
    HEARTS_MAX_PURCHASE: int = 5
    
    # Leaderboards (the timezone also defines the streak day)
    LEADERBOARD_TIMEZONE: str = "UTC"
    LEADERBOARD_WEEK_START: int = 6  # 0=Monday ... 6=Sunday
    LEADERBOARD_DEFAULT_LIMIT: int = 100
    RANK_LOCK_TTL_SECONDS: int = 10
    RANK_LOCK_ATTEMPTS: int = 5
    RANK_LOCK_BACKOFF_SECONDS: float = 0.05
    
    model_config = ConfigDict(
        env_file=".env",
        case_sensitive=True
    )


@lru_cache()
def get_settings() -> Settings:
    """Returns cached settings instance (singleton)"""
    return Settings()


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for scripts and embedding services"""
    logging.basicConfig(
        level=(level or get_settings().LOG_LEVEL).upper(),
        format="%(asctime)s - %(levelname)s - %(message)s"
    )
