"""
Harness configuration.

Values are read once from the environment (prefix ``TXN_HARNESS_``) or a ``.env``
file and handed to the core as plain values.
"""

import logging
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-level defaults for the test harness."""

    model_config = SettingsConfigDict(
        env_prefix="TXN_HARNESS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Test defaults
    TEST_TIMEOUT_SEC: int = Field(300, ge=1)
    SEVERITY_ALLOWED: str = "warning"
    DB_NAME: str = "test_txn"
    CLONE_DB: Optional[str] = None
    DEFAULT_ENGINE: Optional[str] = None

    # Engine pool
    ENGINE_NAME: str = "test_txn"
    ENGINE_SIZE: str = "XS"
    ENGINE_CONCURRENCY: int = Field(1, ge=1)
    ENGINE_PROVISION_TIMEOUT_SEC: float = 240.0
    ACQUIRE_BACKOFF_SEC: float = 1.0

    # Transactions
    POLL_INTERVAL_SEC: float = 1.0
    SUBMIT_ATTEMPTS: int = Field(3, ge=1)
    SUBMIT_RETRY_DELAY_SEC: float = 30.0
    FETCH_TIMEOUT_SEC: float = 120.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    LOG_FILE: Optional[str] = None

    @field_validator("SEVERITY_ALLOWED")
    @classmethod
    def _check_severity(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("none", "warning", "error"):
            raise ValueError(f"SEVERITY_ALLOWED must be none, warning or error: {v!r}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.strip().upper()


settings = Settings()


def configure_logging() -> None:
    """Apply the logging settings to the root logger."""
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL),
        format=settings.LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(settings.LOG_FILE)
            if settings.LOG_FILE
            else logging.NullHandler(),
        ],
    )
