"""
Promise Keeper — Centralized configuration.

Loads all settings from .env and validates them.
Every calendar rule, reminder threshold and job interval the engine uses
is defined here; core modules receive them through small rule objects.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from src/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram (only needed to run the bot)
    TELEGRAM_BOT_TOKEN: str = ""

    # Security
    ALLOWED_USER_IDS: list[int] = []
    MONITORED_CHAT_IDS: list[str] = []   # empty or "*" → all chats

    # SQLite
    DATABASE_PATH: str = "data/obligations.db"
    TIMEZONE: str = "UTC"

    # Commitment / timeframe pattern file (empty → bundled src/data/patterns.json)
    PATTERNS_PATH: str = ""

    # Calendar rules for due-date calculation
    END_OF_DAY_HOUR: int = 17
    DEFAULT_START_HOUR: int = 9
    WEEK_END_HOUR: int = 17
    WEEKDAY_DUE_HOUR: int = 9
    TODAY_OFFSET_HOURS: float = 4
    DEFAULT_FOLLOWUP_HOURS: float = 4
    FOLLOWUP_FEW_MINUTES_MS: int = 15 * 60 * 1000
    FOLLOWUP_FEW_HOURS_MS: int = 2 * 60 * 60 * 1000
    DEFAULT_IN_MINUTES: int = 30
    DEFAULT_IN_HOURS: int = 2
    DEFAULT_IN_DAYS: int = 1

    # Escalation ladder (hours before deadline)
    REMINDER_THRESHOLD_24H: float = 24
    REMINDER_THRESHOLD_4H: float = 4
    REMINDER_THRESHOLD_1H: float = 1
    TRIAGE_CHAT_ID: str = ""

    # SLA
    DEFAULT_SLA_MINUTES: int = 10
    SLA_NUDGE_MINUTES_BEFORE: int = 5

    # Jobs
    FOLLOWUP_CHECK_INTERVAL_SECONDS: int = 300
    SLA_CHECK_INTERVAL_SECONDS: int = 60
    DELIVERY_TIMEOUT_SECONDS: float = 10

    # Failure monitoring
    FAILURE_HOURLY_THRESHOLD: int = 5
    FAILURE_RETENTION_DAYS: int = 30
    FAILURE_CLEANUP_HOUR: int = 3

    @field_validator("ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator("MONITORED_CHAT_IDS", mode="before")
    @classmethod
    def parse_chat_ids(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, list):
            return [str(c) for c in v]
        if isinstance(v, str) and v.strip():
            return [c.strip() for c in v.split(",") if c.strip()]
        return []

    @field_validator(
        "END_OF_DAY_HOUR", "DEFAULT_START_HOUR", "WEEK_END_HOUR",
        "WEEKDAY_DUE_HOUR", "FAILURE_CLEANUP_HOUR",
        mode="before",
    )
    @classmethod
    def parse_hour(cls, v: str | int) -> int:
        hour = int(v)
        if not 0 <= hour <= 23:
            raise ValueError(f"hour must be between 0 and 23, got: {hour}")
        return hour

    @field_validator(
        "TODAY_OFFSET_HOURS", "DEFAULT_FOLLOWUP_HOURS", "FOLLOWUP_FEW_MINUTES_MS",
        "FOLLOWUP_FEW_HOURS_MS", "DEFAULT_IN_MINUTES", "DEFAULT_IN_HOURS",
        "DEFAULT_IN_DAYS", "REMINDER_THRESHOLD_24H", "REMINDER_THRESHOLD_4H",
        "REMINDER_THRESHOLD_1H", "DEFAULT_SLA_MINUTES", "SLA_NUDGE_MINUTES_BEFORE",
        "FOLLOWUP_CHECK_INTERVAL_SECONDS", "SLA_CHECK_INTERVAL_SECONDS",
        "DELIVERY_TIMEOUT_SECONDS", "FAILURE_HOURLY_THRESHOLD",
        "FAILURE_RETENTION_DAYS",
    )
    @classmethod
    def must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"must be positive, got: {v}")
        return v


def _load_settings() -> Settings:
    """Load settings from environment. Unset keys keep their defaults."""
    values = {
        name: os.environ[name]
        for name in Settings.model_fields
        if os.getenv(name) not in (None, "")
    }
    return Settings(**values)


# Singleton — imported by all other modules as:
#   from src.config import settings
settings = _load_settings()
