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

"""Risk classification of operations against configured risk patterns."""

from collections.abc import Sequence

from .matcher import KeywordMatcher
from .models import (
    UNCLASSIFIED,
    Classification,
    Operation,
    PermissionConfig,
    RiskPattern,
    severity,
)


def tool_matches(
    tool_patterns: Sequence[str], tool_name: str | None, matcher: KeywordMatcher
) -> bool:
    """Check whether any tool pattern (case-insensitive regex) hits tool_name."""
    if not tool_name:
        return False
    return any(matcher.match(tool_name, (source,), "regex") for source in tool_patterns)


def pattern_matches(
    pattern: RiskPattern, operation: Operation, matcher: KeywordMatcher
) -> bool:
    """Check whether a single pattern covers an operation."""
    if not pattern.enabled:
        return False
    if tool_matches(pattern.tool_patterns, operation.tool_name, matcher):
        return True
    if not pattern.keywords:
        if pattern.tool_patterns:
            return False
        return pattern.category in ("any", operation.category)
    return bool(
        matcher.match(operation.detail, pattern.keywords, pattern.match_type, pattern.case_sensitive)
    )


def highest_risk_level(patterns: tuple[RiskPattern, ...] | list[RiskPattern]) -> str:
    """Most severe level among patterns, UNCLASSIFIED when there are none."""
    level = UNCLASSIFIED
    for pattern in patterns:
        if severity(pattern.risk_level) > severity(level):
            level = pattern.risk_level
    return level


def classify(
    operation: Operation,
    config: PermissionConfig,
    matcher: KeywordMatcher | None = None,
) -> Classification:
    """Collect every enabled pattern covering the operation, in config order."""
    if matcher is None:
        matcher = KeywordMatcher()
    matched = tuple(p for p in config.patterns if pattern_matches(p, operation, matcher))
    return Classification(risk_level=highest_risk_level(matched), matched_patterns=matched)
