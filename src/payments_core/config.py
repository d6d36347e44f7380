"""Process configuration read once at startup."""

import logging
import os
from typing import Optional

from pydantic import BaseModel, Field

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

MIN_ENCRYPTION_KEY_LENGTH = 32


def normalize_database_url(db_url: str) -> str:
    """Rewrite plain PostgreSQL URLs to the asyncpg driver."""
    if db_url.startswith("postgresql://"):
        return db_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if db_url.startswith("postgres://"):
        return db_url.replace("postgres://", "postgresql+asyncpg://", 1)
    return db_url


class Settings(BaseModel):
    """Runtime settings for the API and CLI entry points."""

    database_url: str
    encryption_key: str = Field(..., repr=False)
    previous_encryption_key: Optional[str] = Field(default=None, repr=False)
    stripe_webhook_secret: Optional[str] = Field(default=None, repr=False)
    admin_api_key: Optional[str] = Field(default=None, repr=False)
    app_base_url: str = "http://localhost:3000"
    api_base_url: str = "http://localhost:8000"
    payment_result_path: str = "/khairat/payment-result"
    log_level: str = "INFO"
    kdf_iterations: int = 100_000
    admin_rate_limit: str = "60/minute"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables.

        Raises:
            ConfigurationError: If the database URL or the encryption key is
                missing, or the key is shorter than 32 characters.
        """
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ConfigurationError("DATABASE_URL environment variable is required")

        encryption_key = os.getenv("PAYMENT_CREDENTIALS_ENCRYPTION_KEY")
        if not encryption_key:
            raise ConfigurationError(
                "PAYMENT_CREDENTIALS_ENCRYPTION_KEY environment variable is required"
            )
        if len(encryption_key) < MIN_ENCRYPTION_KEY_LENGTH:
            raise ConfigurationError(
                "PAYMENT_CREDENTIALS_ENCRYPTION_KEY must be at least "
                f"{MIN_ENCRYPTION_KEY_LENGTH} characters long"
            )

        previous_key = os.getenv("PAYMENT_CREDENTIALS_ENCRYPTION_KEY_OLD") or None
        if previous_key and len(previous_key) < MIN_ENCRYPTION_KEY_LENGTH:
            logger.warning(
                "PAYMENT_CREDENTIALS_ENCRYPTION_KEY_OLD is shorter than "
                f"{MIN_ENCRYPTION_KEY_LENGTH} characters and will be ignored"
            )
            previous_key = None

        return cls(
            database_url=normalize_database_url(database_url),
            encryption_key=encryption_key,
            previous_encryption_key=previous_key,
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
            admin_api_key=os.getenv("API_KEY") or None,
            app_base_url=os.getenv("APP_BASE_URL", "http://localhost:3000"),
            api_base_url=os.getenv("API_BASE_URL", "http://localhost:8000"),
            payment_result_path=os.getenv("PAYMENT_RESULT_PATH", "/khairat/payment-result"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for a process entry point."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
