"""Settings and logging setup for helpdesk-ticketing."""

import logging
from functools import lru_cache
from logging.config import dictConfig
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Configuration read from ``HELPDESK_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="HELPDESK_", env_file=".env", case_sensitive=False, extra="ignore"
    )

    database_dsn: Optional[str] = Field(default=None)
    db_schema: str = Field(default="helpdesk")

    default_page_size: int = Field(default=10, ge=1)
    max_page_size: int = Field(default=200, ge=1)
    archive_after_days: int = Field(default=30, ge=1)

    notifications_enabled: bool = Field(default=True)
    admin_user_ids: List[str] = Field(default_factory=list)

    log_level: str = Field(default="INFO")
    log_format: str = Field(default="%(asctime)s %(levelname)s %(name)s %(message)s")


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of the settings."""

    return Settings()


def configure_logging(settings: Settings) -> logging.Logger:
    """Configure the package logger based on settings."""

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "default": {
                    "format": settings.log_format,
                }
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": level,
                }
            },
            "loggers": {
                "helpdesk_ticketing": {
                    "handlers": ["default"],
                    "level": level,
                    "propagate": False,
                }
            },
        }
    )

    logger = logging.getLogger("helpdesk_ticketing")
    logger.setLevel(level)
    return logger
