"""Commitment matcher — deterministic detection of promises in chat text.

Matching is boolean: any commitment rule hit is enough to go on to
timeframe extraction. Rules are deliberately broad; false positives are
absorbed downstream by duplicate suppression.

No I/O: this module only transforms text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from src.core.patterns import CompiledPatterns, CompiledRule, get_patterns

_PROMISE_MAX_LEN = 100
_FALLBACK_PROMISE = "Follow-up commitment"
_SENTENCE_SPLIT = re.compile(r"[.!?]+")


@dataclass
class CommitmentMatch:
    """Which commitment rules matched a piece of text."""

    text: str
    matched: list[CompiledRule]

    @property
    def pattern_sources(self) -> list[str]:
        return [r.source for r in self.matched]


def find_commitment(
    text: str, patterns: CompiledPatterns | None = None,
) -> CommitmentMatch | None:
    """Return the matched commitment rules, or None if the text makes no promise."""
    if not text or not text.strip():
        return None
    patterns = patterns or get_patterns()
    matched = [rule for rule in patterns.commitment if rule.matches(text)]
    if not matched:
        return None
    return CommitmentMatch(text=text, matched=matched)


def contains_commitment(text: str, patterns: CompiledPatterns | None = None) -> bool:
    return find_commitment(text, patterns) is not None


def extract_promise_text(match: CommitmentMatch) -> str:
    """Pick the sentence carrying the promise, truncated for titles."""
    promise = match.text
    for sentence in _SENTENCE_SPLIT.split(match.text):
        if any(rule.matches(sentence) for rule in match.matched):
            promise = sentence.strip()
            break

    promise = promise.strip()
    if len(promise) > _PROMISE_MAX_LEN:
        promise = promise[: _PROMISE_MAX_LEN - 3] + "..."
    return promise or _FALLBACK_PROMISE


def is_completion_update(text: str, patterns: CompiledPatterns | None = None) -> bool:
    """True if a thread reply reads like "done" / "fixed" / "heads up"."""
    if not text:
        return False
    patterns = patterns or get_patterns()
    return any(rule.matches(text) for rule in patterns.completion)


def is_completion_reaction(emoji: str, patterns: CompiledPatterns | None = None) -> bool:
    patterns = patterns or get_patterns()
    return emoji in patterns.completion_reactions
