"""Pattern rule loading — the editable rule file behind the matchers.

Rules live in JSON (bundled default: src/data/patterns.json, override with
PATTERNS_PATH) so pattern tuning does not require code changes. Each rule
compiles into a predicate/extractor pair; list order is evaluation order.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel

from src.data.models import TimeframeKind, TimeUnit

logger = logging.getLogger(__name__)

_DEFAULT_PATTERNS_PATH = Path(__file__).resolve().parent.parent / "data" / "patterns.json"


class TimeframeRule(BaseModel):
    """One timeframe rule as written in the pattern file.

    JSON example:
    {"kind": "in_hours", "pattern": "in (\\d+) hours?", "unit": "hours"}

    `unit` is fixed for the rule; when omitted, a second capture group (if
    any) supplies it, e.g. "within 3 days".
    """
    kind: TimeframeKind
    pattern: str
    unit: TimeUnit | None = None


class PatternSet(BaseModel):
    commitment: list[str]
    timeframes: list[TimeframeRule]
    completion: list[str] = []
    completion_reactions: list[str] = []


@dataclass(frozen=True)
class CompiledRule:
    """A compiled regex acting as predicate (`matches`) and extractor (`search`)."""

    source: str
    regex: re.Pattern[str]

    def matches(self, text: str) -> bool:
        return self.regex.search(text) is not None

    def search(self, text: str) -> re.Match[str] | None:
        return self.regex.search(text)


@dataclass(frozen=True)
class CompiledTimeframeRule(CompiledRule):
    kind: TimeframeKind = TimeframeKind.DEFAULT
    unit: TimeUnit | None = None


@dataclass(frozen=True)
class CompiledPatterns:
    commitment: tuple[CompiledRule, ...]
    timeframes: tuple[CompiledTimeframeRule, ...]
    completion: tuple[CompiledRule, ...]
    completion_reactions: frozenset[str]


def _compile(pattern: str, label: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        raise ValueError(f"Invalid {label} pattern {pattern!r}: {exc}") from exc


def compile_patterns(pattern_set: PatternSet) -> CompiledPatterns:
    """Compile a validated PatternSet, preserving rule order."""
    return CompiledPatterns(
        commitment=tuple(
            CompiledRule(p, _compile(p, "commitment")) for p in pattern_set.commitment
        ),
        timeframes=tuple(
            CompiledTimeframeRule(
                r.pattern, _compile(r.pattern, f"timeframe '{r.kind.value}'"),
                kind=r.kind, unit=r.unit,
            )
            for r in pattern_set.timeframes
        ),
        completion=tuple(
            CompiledRule(p, _compile(p, "completion")) for p in pattern_set.completion
        ),
        completion_reactions=frozenset(pattern_set.completion_reactions),
    )


def load_pattern_set(path: str | Path | None = None) -> PatternSet:
    """Read and validate a pattern file."""
    if path is None:
        from src.config import settings
        path = settings.PATTERNS_PATH or _DEFAULT_PATTERNS_PATH

    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    pattern_set = PatternSet.model_validate(raw)
    logger.debug(
        "Loaded %d commitment / %d timeframe rules from %s",
        len(pattern_set.commitment), len(pattern_set.timeframes), path,
    )
    return pattern_set


@lru_cache(maxsize=1)
def get_patterns() -> CompiledPatterns:
    """Process-wide compiled patterns from the configured file."""
    return compile_patterns(load_pattern_set())
