"""Timeframe resolver — turns "by 5pm" / "in 2 hours" into a descriptor.

Rules are tried in file order and the first hit wins, so the explicit
clock-time rule and "later today" must come before the vaguer "today" rule.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel

from src.core.patterns import CompiledPatterns, get_patterns
from src.data.models import TimeframeKind, TimeUnit

logger = logging.getLogger(__name__)

_UNIT_PREFIXES = (
    ("min", TimeUnit.MINUTES),
    ("h", TimeUnit.HOURS),
    ("d", TimeUnit.DAYS),
    ("w", TimeUnit.WEEKS),
)


class Timeframe(BaseModel):
    """Structured timeframe extracted from a message.

    JSON example:
    {
        "kind": "in_hours",
        "value": 2,
        "unit": "hours",
        "matched_text": "in 2 hours",
        "confidence": "high"
    }
    """
    kind: TimeframeKind = TimeframeKind.DEFAULT
    value: int | None = None
    unit: TimeUnit | None = None
    matched_text: str | None = None
    confidence: str = "low"


DEFAULT_TIMEFRAME = Timeframe()


def _parse_unit(raw: str | None) -> TimeUnit | None:
    if not raw:
        return None
    raw = raw.strip().lower()
    for prefix, unit in _UNIT_PREFIXES:
        if raw.startswith(prefix):
            return unit
    return None


def resolve_timeframe(
    text: str, patterns: CompiledPatterns | None = None,
) -> Timeframe:
    """Return the first matching timeframe, or the low-confidence default."""
    if not text:
        return Timeframe()
    patterns = patterns or get_patterns()

    for rule in patterns.timeframes:
        match = rule.search(text)
        if match is None:
            continue

        value: int | None = None
        unit: TimeUnit | None = None
        groups = match.groups()
        if groups and groups[0] and groups[0].isdigit():
            value = int(groups[0])
            unit = rule.unit or (_parse_unit(groups[1]) if len(groups) > 1 else None)

        timeframe = Timeframe(
            kind=rule.kind,
            value=value,
            unit=unit,
            matched_text=match.group(0).strip(),
            confidence="high",
        )
        logger.debug("Timeframe %s matched %r", rule.kind.value, timeframe.matched_text)
        return timeframe

    return Timeframe()
