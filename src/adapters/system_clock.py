"""System clock adapter — implements Clock in the configured timezone."""

from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo


class SystemClock:
    """Wall-clock time, timezone-aware."""

    def __init__(self, timezone: str | None = None) -> None:
        if timezone is None:
            from src.config import settings
            timezone = settings.TIMEZONE
        self._tz = ZoneInfo(timezone)

    def now(self) -> datetime:
        return datetime.now(self._tz)
