# Copyright 2025 Lars Marowsky-Brée <lars@marowsky-bree.eu>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Tests for the shared keyword matcher."""

import logging

import pytest

from expert_router.errors import UnknownIdentifierError
from expert_router.matcher import KeywordMatcher


@pytest.fixture
def matcher() -> KeywordMatcher:
    return KeywordMatcher()


def test_contains_is_case_insensitive_by_default(matcher: KeywordMatcher) -> None:
    """Test contains matching ignores case and returns original spelling."""
    hits = matcher.match("Please check for XSS here", ["xss", "OWASP"], "contains")
    assert hits == ["xss"]


def test_contains_case_sensitive(matcher: KeywordMatcher) -> None:
    """Test case-sensitive contains matching."""
    assert matcher.match("use React hooks", ["react"], "contains", case_sensitive=True) == []
    assert matcher.match("use React hooks", ["React"], "contains", case_sensitive=True) == [
        "React"
    ]


def test_exact_requires_whole_text(matcher: KeywordMatcher) -> None:
    """Test exact matching compares the whole text."""
    assert matcher.match("Review", ["review"], "exact") == ["review"]
    assert matcher.match("review this", ["review"], "exact") == []


def test_starts_and_ends_with(matcher: KeywordMatcher) -> None:
    """Test startsWith and endsWith matching."""
    assert matcher.match("fix the bug", ["fix", "bug"], "startsWith") == ["fix"]
    assert matcher.match("fix the bug", ["fix", "bug"], "endsWith") == ["bug"]


def test_keywords_returned_in_order(matcher: KeywordMatcher) -> None:
    """Test all hitting keywords are returned in keyword order."""
    hits = matcher.match("a bug and an error", ["error", "issue", "bug"], "contains")
    assert hits == ["error", "bug"]


def test_regex_uses_first_keyword_only(matcher: KeywordMatcher) -> None:
    """Test regex matching compiles only the first keyword."""
    assert matcher.match("git push --force", [r"git\s+push.*--force", "zzz"], "regex") == [
        r"git\s+push.*--force"
    ]
    assert matcher.match("zzz", [r"^abc$", "zzz"], "regex") == []


def test_regex_search_anywhere(matcher: KeywordMatcher) -> None:
    """Test regex matches anywhere in the text."""
    assert matcher.match("sudo rm -rf /", [r"rm\s+-rf"], "regex") == [r"rm\s+-rf"]


def test_regex_case_flags(matcher: KeywordMatcher) -> None:
    """Test regex honours case sensitivity through flags."""
    assert matcher.match("DROP TABLE users", [r"drop\s+table"], "regex") == [r"drop\s+table"]
    assert matcher.match("DROP TABLE users", [r"drop\s+table"], "regex", case_sensitive=True) == []


def test_invalid_regex_never_matches(
    matcher: KeywordMatcher, caplog: pytest.LogCaptureFixture
) -> None:
    """Test an invalid regex is logged once and never matches."""
    with caplog.at_level(logging.WARNING, logger="expert_router.matcher"):
        assert matcher.match("anything (", ["("], "regex") == []
        assert matcher.match("anything (", ["("], "regex") == []
    warnings = [r for r in caplog.records if "Invalid regex" in r.getMessage()]
    assert len(warnings) == 1
    assert not matcher.is_valid_regex("(")
    assert matcher.is_valid_regex(r"\d+")


def test_empty_text_never_matches(matcher: KeywordMatcher) -> None:
    """Test empty text produces no hits."""
    assert matcher.match("", ["a"], "contains") == []
    assert matcher.match("", [".*"], "regex") == []


def test_unknown_match_type_fails(matcher: KeywordMatcher) -> None:
    """Test an unknown match type is rejected."""
    with pytest.raises(UnknownIdentifierError):
        matcher.match("text", ["t"], "fuzzy")
