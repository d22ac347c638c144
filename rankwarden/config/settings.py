import logging
import urllib.parse
from pathlib import Path
from typing import Dict, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from rankwarden.utils.constants import (CACHE_SETTINGS, DB_SETTINGS,
                                        LOGGER_NAME, RANK_SETTINGS)

logger = logging.getLogger(LOGGER_NAME)

PORT_RANGE = dict(ge=1, le=65535)


class Settings(BaseSettings):
    """Bot settings, read from the environment and an optional .env file"""

    environment: str = "development"
    debug: bool = False
    json_logging: bool = False

    # Discord
    discord_token: str
    guild_id: Optional[int] = None
    command_prefix: str = "!"

    # Database: either a full SQLAlchemy URL or the PostgreSQL parts
    database_url: Optional[str] = None
    postgres_user: Optional[str] = None
    postgres_password: Optional[str] = None
    postgres_db: Optional[str] = None
    postgres_host: str = "localhost"
    postgres_port: int = Field(5432, **PORT_RANGE)

    db_pool_size: int = Field(DB_SETTINGS['POOL_SIZE'], gt=0)
    db_max_overflow: int = Field(DB_SETTINGS['MAX_OVERFLOW'], ge=0)
    db_pool_timeout: int = Field(DB_SETTINGS['POOL_TIMEOUT'], gt=0)
    db_pool_recycle: int = DB_SETTINGS['POOL_RECYCLE']

    # Redis
    redis_host: str = "localhost"
    redis_port: int = Field(6379, **PORT_RANGE)
    redis_password: Optional[str] = None
    redis_db: int = Field(0, ge=0)

    # Rank engine
    rank_catalog_path: Optional[Path] = None
    badge_conflict_retries: int = Field(RANK_SETTINGS['BADGE_CONFLICT_RETRIES'], ge=0)
    promotion_channel_id: Optional[int] = None
    demotion_channel_id: Optional[int] = None
    rank_feed_size: int = Field(RANK_SETTINGS['RANK_FEED_SIZE'], gt=0)
    notification_list_size: int = Field(CACHE_SETTINGS['NOTIFICATION_LIST_SIZE'], gt=0)

    base_dir: Path = Path(__file__).resolve().parent.parent.parent
    log_dir: Path = base_dir / "logs"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        validate_assignment=True,
        extra="ignore"
    )

    @field_validator('discord_token')
    @classmethod
    def check_token(cls, value: str) -> str:
        if len(value) < 50:
            raise ValueError("Invalid Discord token length")
        return value

    @field_validator('rank_catalog_path')
    @classmethod
    def check_catalog_file(cls, value: Optional[Path]) -> Optional[Path]:
        if value is not None and not value.is_file():
            raise ValueError(f"Rank catalog file {value} not found")
        return value

    @model_validator(mode='after')
    def check_database(self) -> 'Settings':
        if not self.database_url:
            missing = [name for name in ('postgres_user', 'postgres_password', 'postgres_db')
                       if not getattr(self, name)]
            if missing:
                raise ValueError(f"Missing database settings: {', '.join(missing)}")
        return self

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Settings loaded for environment: {self.environment}")

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        password = urllib.parse.quote_plus(self.postgres_password or "")
        return (f"postgresql+asyncpg://{self.postgres_user}:{password}"
                f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}")

    @property
    def redis_url(self) -> str:
        auth = f":{urllib.parse.quote_plus(self.redis_password)}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    @property
    def pool_options(self) -> Dict[str, int]:
        return {
            'pool_size': self.db_pool_size,
            'max_overflow': self.db_max_overflow,
            'pool_timeout': self.db_pool_timeout,
            'pool_recycle': self.db_pool_recycle,
        }

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def log_level(self) -> str:
        return "DEBUG" if self.debug else "INFO"


def get_settings() -> Settings:
    try:
        return Settings()
    except Exception as e:
        logger.critical(f"Failed to load settings: {e}")
        raise
