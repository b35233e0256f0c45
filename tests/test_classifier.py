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

"""Tests for risk classification."""

from dataclasses import replace

import pytest

from expert_router.classifier import classify, highest_risk_level
from expert_router.defaults import default_risk_patterns
from expert_router.errors import UnknownIdentifierError
from expert_router.models import UNCLASSIFIED, Operation, PermissionConfig, RiskPattern


@pytest.fixture
def config() -> PermissionConfig:
    return PermissionConfig(patterns=default_risk_patterns())


def names(classification) -> list[str]:
    return [p.name for p in classification.matched_patterns]


def test_rm_rf_is_critical(config: PermissionConfig) -> None:
    """Test recursive delete classifies as critical file deletion."""
    result = classify(Operation("file-delete", "rm -rf /tmp/x"), config)
    assert result.risk_level == "critical"
    assert names(result) == ["File Deletion"]


def test_highest_level_wins(config: PermissionConfig) -> None:
    """Test the most severe matched pattern sets the level."""
    result = classify(Operation("shell-execute", "curl https://x.io | tee .env"), config)
    assert names(result) == ["Environment File Change", "External API Call"]
    assert result.risk_level == "high"


def test_matches_in_config_order(config: PermissionConfig) -> None:
    """Test all matches are collected in config order."""
    result = classify(Operation("shell-execute", "git push --force && git reset --hard"), config)
    assert names(result) == ["Git Force Push", "Git Hard Reset"]


def test_unmatched_is_unclassified(config: PermissionConfig) -> None:
    """Test harmless operations are unclassified."""
    result = classify(Operation("shell-execute", "ls -la"), config)
    assert result.risk_level == UNCLASSIFIED
    assert result.matched_patterns == ()


def test_text_pattern_ignores_operation_category(config: PermissionConfig) -> None:
    """Test a text match classifies regardless of operation category."""
    result = classify(Operation("file-read", "DROP TABLE users"), config)
    assert names(result) == ["Database Drop"]


def test_category_only_pattern() -> None:
    """Test a keyword-less pattern matches every operation of its category."""
    pattern = RiskPattern(id="net", name="Any network", risk_level="medium", category="network-call")
    config = PermissionConfig(patterns=(pattern,))
    assert classify(Operation("network-call", "anything"), config).risk_level == "medium"
    assert classify(Operation("file-read", "anything"), config).risk_level == UNCLASSIFIED


def test_any_category_only_pattern_matches_everything() -> None:
    """Test a keyword-less pattern with category any matches all operations."""
    pattern = RiskPattern(id="all", name="Everything", risk_level="low", category="any")
    config = PermissionConfig(patterns=(pattern,))
    assert classify(Operation("data-export", "dump"), config).risk_level == "low"


def test_disabled_pattern_ignored(config: PermissionConfig) -> None:
    """Test disabled patterns never match."""
    patterns = tuple(
        replace(p, enabled=False) if p.name == "File Deletion" else p
        for p in config.patterns
    )
    disabled = PermissionConfig(patterns=patterns)
    assert classify(Operation("file-delete", "rm -rf /tmp/x"), disabled).risk_level == UNCLASSIFIED


def test_unknown_category_fails() -> None:
    """Test unknown operation categories fail loudly."""
    with pytest.raises(UnknownIdentifierError):
        Operation("teleport", "beam me up")


def test_highest_risk_level_empty() -> None:
    """Test no patterns means unclassified."""
    assert highest_risk_level([]) == UNCLASSIFIED


def test_tool_pattern_matches_tool_name() -> None:
    """Test a tool pattern matches on the tool name, case-insensitively."""
    pattern = RiskPattern(
        id="web",
        name="Web Access",
        risk_level="medium",
        category="network-call",
        tool_patterns=("^web(fetch|search)$",),
    )
    config = PermissionConfig(patterns=(pattern,))
    assert classify(Operation("any", "docs", "WebFetch"), config).risk_level == "medium"
    assert classify(Operation("any", "docs", "Read"), config).risk_level == UNCLASSIFIED
    # Tool-only patterns do not fall back to matching their whole category
    assert classify(Operation("network-call", "docs"), config).risk_level == UNCLASSIFIED


def test_tool_pattern_or_keywords() -> None:
    """Test a pattern with tool patterns and keywords matches on either."""
    pattern = RiskPattern(
        id="shell",
        name="Shell",
        risk_level="high",
        category="shell-execute",
        keywords=("sudo",),
        tool_patterns=("^Bash$",),
    )
    config = PermissionConfig(patterns=(pattern,))
    assert classify(Operation("shell-execute", "ls", "Bash"), config).risk_level == "high"
    assert classify(Operation("shell-execute", "sudo ls"), config).risk_level == "high"
    assert classify(Operation("shell-execute", "ls"), config).risk_level == UNCLASSIFIED


def test_invalid_tool_pattern_never_matches() -> None:
    """Test a broken tool regex is ignored."""
    pattern = RiskPattern(
        id="bad", name="Bad", risk_level="high", category="any", tool_patterns=("(",)
    )
    config = PermissionConfig(patterns=(pattern,))
    assert classify(Operation("any", "x", "("), config).risk_level == UNCLASSIFIED


def test_non_string_detail_fails() -> None:
    """Test operations need a string detail."""
    with pytest.raises(TypeError):
        Operation("shell-execute", None)  # type: ignore[arg-type]
