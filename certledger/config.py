from pydantic_settings import BaseSettings
from typing import Optional
from functools import lru_cache
import logging

class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./certledger.db"
    POOL_SIZE: int = 5
    MAX_OVERFLOW: int = 10
    POOL_TIMEOUT: int = 30
    POOL_RECYCLE: int = 300
    CONNECT_RETRIES: int = 2

    # Row lock / statement wait before an operation fails with a timeout
    LOCK_TIMEOUT_SECONDS: float = 5.0

    # Application
    APP_NAME: str = "Certificate Stock Ledger"
    APP_VERSION: str = "1.0.0"
    DEFAULT_ACTOR: str = "System"

    # When set, migrations may only move stock away from this branch
    HUB_BRANCH: Optional[str] = None

    # Audit fallback file
    FALLBACK_LOG_DIR: str = "./logs"
    FALLBACK_LOG_FILE: str = "failed-logs.jsonl"

    # Audit retention
    LOG_RETENTION_DAYS: int = 90
    MAX_RETENTION_DAYS: int = 3650

    # Log queries
    DEFAULT_PAGE_SIZE: int = 100
    MAX_PAGE_SIZE: int = 100

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

@lru_cache
def get_settings() -> Settings:
    return Settings()

def setup_logging(level: Optional[str] = None):
    """Configure root logging for command line entry points"""
    logging.basicConfig(
        level=(level or get_settings().LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
