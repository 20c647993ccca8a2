"""Tests for src.core.patterns and src.core.matcher — rule loading and commitment detection."""

import json

import pytest

from src.core.matcher import (
    contains_commitment,
    extract_promise_text,
    find_commitment,
    is_completion_reaction,
    is_completion_update,
)
from src.core.patterns import (
    PatternSet,
    TimeframeRule,
    compile_patterns,
    get_patterns,
    load_pattern_set,
)
from src.data.models import TimeframeKind


# ---------------------------------------------------------------------------
# Pattern file loading
# ---------------------------------------------------------------------------


class TestLoadPatterns:
    def test_bundled_file_loads(self):
        pattern_set = load_pattern_set()
        assert pattern_set.commitment
        assert pattern_set.timeframes[0].kind == TimeframeKind.SPECIFIC_TIME

    def test_order_preserved_after_compile(self):
        pattern_set = load_pattern_set()
        compiled = compile_patterns(pattern_set)
        assert [r.kind for r in compiled.timeframes] == [r.kind for r in pattern_set.timeframes]

    def test_custom_file(self, tmp_path):
        path = tmp_path / "patterns.json"
        path.write_text(json.dumps({
            "commitment": ["\\bpromise\\b"],
            "timeframes": [{"kind": "tomorrow", "pattern": "mañana"}],
        }))
        compiled = compile_patterns(load_pattern_set(path))
        assert contains_commitment("I promise", compiled)
        assert not contains_commitment("I'll check", compiled)
        assert compiled.completion == ()

    def test_invalid_regex_names_the_rule(self):
        pattern_set = PatternSet(
            commitment=["ok"],
            timeframes=[TimeframeRule(kind=TimeframeKind.TODAY, pattern="(unclosed")],
        )
        with pytest.raises(ValueError, match="today"):
            compile_patterns(pattern_set)

    def test_unknown_kind_rejected(self, tmp_path):
        path = tmp_path / "patterns.json"
        path.write_text(json.dumps({
            "commitment": [],
            "timeframes": [{"kind": "fortnight", "pattern": "x"}],
        }))
        with pytest.raises(ValueError):
            load_pattern_set(path)

    def test_get_patterns_is_cached(self):
        assert get_patterns() is get_patterns()


# ---------------------------------------------------------------------------
# Commitment detection
# ---------------------------------------------------------------------------


class TestFindCommitment:
    @pytest.mark.parametrize("text", [
        "I'll check the lock status and get back to you by 5pm",
        "working on it",
        "On it!",
        "Let me check with the cleaner",
        "ETA 20 minutes",
        "Will follow up tomorrow",
        "I'll send the invoice",
        "give me an hour",
    ])
    def test_detects_commitments(self, text):
        assert contains_commitment(text)

    @pytest.mark.parametrize("text", [
        "Here's the report you asked for",
        "Thanks!",
        "",
        "   ",
    ])
    def test_no_commitment(self, text):
        assert find_commitment(text) is None

    def test_case_insensitive(self):
        assert contains_commitment("WORKING ON IT")

    def test_reports_matched_rules(self):
        match = find_commitment("I'll check and get back to you by 5pm")
        assert match is not None
        assert len(match.pattern_sources) >= 2


class TestExtractPromiseText:
    def test_picks_the_promising_sentence(self):
        match = find_commitment("Thanks for flagging. I'll look into it today. Cheers")
        assert extract_promise_text(match) == "I'll look into it today"

    def test_truncates_long_promises(self):
        text = "I'll check " + "a" * 200
        promise = extract_promise_text(find_commitment(text))
        assert len(promise) == 100
        assert promise.endswith("...")

    def test_whole_text_when_single_sentence(self):
        text = "I'll check the lock status and get back to you by 5pm"
        assert extract_promise_text(find_commitment(text)) == text


class TestCompletionSignals:
    @pytest.mark.parametrize("text", ["Done", "All fixed now", "Resolved, thanks", "heads up: lock replaced"])
    def test_update_indicators(self, text):
        assert is_completion_update(text)

    def test_non_update(self):
        assert not is_completion_update("still looking")
        assert not is_completion_update("")

    def test_reactions(self):
        assert is_completion_reaction("✅")
        assert is_completion_reaction("👍")
        assert not is_completion_reaction("😂")
