"""Failure recorder — categorizes and logs engine failures, never raises.

Every persistence or delivery failure inside a scan is handed here and the
scan moves on (fail-open). The recorder keeps an append-only log in a
FailureStore plus an in-process counter keyed by (source, reason); both
monitor jobs share one recorder, so the counter is lock-protected.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from src.data.models import FailureReason, FailureRecord

if TYPE_CHECKING:
    from src.ports.clock_port import Clock
    from src.ports.obligation_port import FailureStore

logger = logging.getLogger(__name__)

FAIL_OPEN = "fail_open"


class FailureCounter:
    """Thread-safe in-memory failure counts keyed by "source:reason"."""

    def __init__(self, clock: Clock | None = None) -> None:
        self._counts: dict[str, int] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._last_reset = self._now()

    def _now(self) -> datetime | None:
        return self._clock.now() if self._clock else None

    def increment(self, source: str, reason: FailureReason) -> None:
        key = f"{source}:{FailureReason(reason).value}"
        with self._lock:
            self._counts[key] = self._counts.get(key, 0) + 1

    def count(self, source: str | None = None, reason: FailureReason | None = None) -> int:
        with self._lock:
            items = list(self._counts.items())
        total = 0
        for key, n in items:
            key_source, _, key_reason = key.rpartition(":")
            if source is not None and key_source != source:
                continue
            if reason is not None and key_reason != FailureReason(reason).value:
                continue
            total += n
        return total

    def breakdown(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()
            self._last_reset = self._now()

    @property
    def last_reset(self) -> datetime | None:
        return self._last_reset


@dataclass
class HealthReport:
    healthy: bool
    failure_rate: int
    threshold: int
    status: str            # "healthy" | "degraded" | "critical"


@dataclass
class FailureStats:
    total: int
    by_source: dict[str, int] = field(default_factory=dict)
    by_reason: dict[str, int] = field(default_factory=dict)
    recent: list[FailureRecord] = field(default_factory=list)


def categorize_error(error: BaseException) -> FailureReason:
    """Guess a failure category from the exception type and message."""
    message = str(error).lower()
    name = type(error).__name__.lower()

    if isinstance(error, TimeoutError) or "timeout" in name or "timedout" in name \
            or "timeout" in message or "timed out" in message:
        return FailureReason.TIMEOUT

    if isinstance(error, ConnectionError) or "connection" in name or "networkerror" in name \
            or any(s in message for s in ("connection", "econnrefused", "enotfound")):
        return FailureReason.CONNECTION_ERROR

    if "database" in message or "database" in name:
        return FailureReason.DATABASE_ERROR

    if isinstance(error, sqlite3.Error) or "query" in name \
            or "query" in message or "sql" in message:
        return FailureReason.QUERY_ERROR

    return FailureReason.UNKNOWN


class FailureRecorder:
    """Append failures, count them, and report a health signal."""

    def __init__(
        self,
        store: FailureStore,
        clock: Clock,
        counter: FailureCounter | None = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self.counter = counter or FailureCounter(clock)

    def record(
        self,
        event_id: str,
        source: str,
        reason: FailureReason | None = None,
        detail: str | BaseException | None = None,
        recovery_action: str = FAIL_OPEN,
    ) -> None:
        """Log a failure. Never raises."""
        try:
            if reason is None:
                reason = (
                    categorize_error(detail)
                    if isinstance(detail, BaseException) else FailureReason.UNKNOWN
                )
            message = str(detail) if detail is not None else None
            self.counter.increment(source, reason)
            self._store.append(
                event_id=event_id,
                source=source,
                failure_reason=reason,
                error_message=message,
                recovery_action=recovery_action,
                created_at=self._clock.now(),
            )
            logger.error(
                "Recorded failure: source=%s reason=%s event=%s: %s",
                source, FailureReason(reason).value, event_id, message,
            )
        except Exception as exc:
            logger.error("Failed to record failure for event %s: %s", event_id, exc)

    def record_exception(self, event_id: str, source: str, error: BaseException) -> None:
        self.record(event_id, source, categorize_error(error), error)

    def rate(self, window_hours: float = 1) -> int:
        """Number of failures recorded in the last `window_hours`."""
        since = self._clock.now() - timedelta(hours=window_hours)
        try:
            return self._store.count_since(since)
        except Exception as exc:
            logger.error("Failed to read failure rate: %s", exc)
            return 0

    def health(self, threshold: int | None = None, window_hours: float = 1) -> HealthReport:
        """healthy < threshold <= degraded < 2 x threshold <= critical."""
        if threshold is None:
            from src.config import settings
            threshold = settings.FAILURE_HOURLY_THRESHOLD

        rate = self.rate(window_hours)
        if rate >= threshold * 2:
            status = "critical"
        elif rate >= threshold:
            status = "degraded"
        else:
            status = "healthy"
        return HealthReport(
            healthy=rate < threshold, failure_rate=rate, threshold=threshold, status=status,
        )

    def stats(self, since: datetime | None = None) -> FailureStats:
        """Totals by source and reason, with the ten most recent records."""
        if since is None:
            since = self._clock.now() - timedelta(hours=24)
        try:
            records = self._store.list_since(since, limit=100)
        except Exception as exc:
            logger.error("Failed to read failure stats: %s", exc)
            return FailureStats(total=0)

        stats = FailureStats(total=len(records), recent=records[:10])
        for r in records:
            stats.by_source[r.source] = stats.by_source.get(r.source, 0) + 1
            key = r.failure_reason.value
            stats.by_reason[key] = stats.by_reason.get(key, 0) + 1
        return stats

    def cleanup(self, days_to_keep: int | None = None) -> int:
        """Prune records older than the retention window."""
        if days_to_keep is None:
            from src.config import settings
            days_to_keep = settings.FAILURE_RETENTION_DAYS
        cutoff = self._clock.now() - timedelta(days=days_to_keep)
        try:
            return self._store.delete_before(cutoff)
        except Exception as exc:
            logger.error("Failed to clean up failure records: %s", exc)
            return 0
