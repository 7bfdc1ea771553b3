"""
Application configuration using Pydantic Settings.

Every field maps to the upper-case environment variable of the same name
(``SEND_TIME``, ``VAPID_PRIVATE_KEY``, ...); a ``.env`` file is read too.
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class Settings(BaseSettings):
    """Push service settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        str_strip_whitespace=True,
        extra="ignore",
        frozen=True,
    )

    # Web Push (VAPID)
    vapid_public_key: str = ""
    vapid_private_key: str = ""
    vapid_subject: str = "mailto:admin@example.com"

    # Schedule
    default_timezone: str = "Europe/Paris"
    send_time: str = "09:00"
    tick_seconds: int = 60
    scheduler_enabled: bool = True

    # Transport
    push_timeout_seconds: float = 10.0
    push_ttl_seconds: int = 86400

    frontend_dist: str = ""
    log_level: str = "INFO"

    @field_validator("send_time")
    @classmethod
    def _check_send_time(cls, value: str) -> str:
        if not _HHMM.match(value):
            raise ValueError(f"SEND_TIME must be HH:MM, got {value!r}")
        return value

    @field_validator("default_timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"DEFAULT_TIMEZONE is not a known zone: {value!r}") from exc
        return value

    @field_validator("tick_seconds")
    @classmethod
    def _check_tick(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("TICK_SECONDS must be positive")
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper() or "INFO"


def load_settings() -> Settings:
    """Build settings from the environment; invalid values raise ``ValueError``."""
    return Settings()


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return load_settings()


def configure_logging(level: str) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # uvicorn may have configured the root logger already; make sure ours still emit.
    logging.getLogger("memento").setLevel(level)
