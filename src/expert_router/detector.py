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

"""Keyword detection: routes free text to the expert best suited for it."""

import dataclasses
import logging
import threading
from collections.abc import Sequence
from typing import Any

from .errors import UnknownIdentifierError
from .matcher import KeywordMatcher
from .models import (
    DetectionResult,
    ExpertId,
    KeywordConfig,
    KeywordRule,
    MatchedRule,
    MatchType,
    generate_id,
    now_iso,
)

logger = logging.getLogger(__name__)

UPDATABLE_RULE_FIELDS = frozenset(
    {
        "name",
        "keywords",
        "match_type",
        "case_sensitive",
        "target_expert",
        "priority",
        "enabled",
        "description",
    }
)


def active_rules(config: KeywordConfig) -> list[KeywordRule]:
    """Enabled user and built-in rules, highest priority first.

    At equal priority user rules come before built-ins, then list order.
    """
    if not config.enabled:
        return []
    candidates = [*config.rules, *config.default_rules]
    ordered = sorted(
        enumerate(candidates),
        key=lambda item: (-item[1].priority, item[1].builtin, item[0]),
    )
    return [rule for _, rule in ordered if rule.enabled]


def detect(
    text: str,
    rules: Sequence[KeywordRule],
    matcher: KeywordMatcher | None = None,
) -> DetectionResult:
    """Match text against every rule and suggest the top-priority target.

    Args:
        text: User input to route
        rules: Active rules, normally from active_rules()
        matcher: Shared matcher (keeps the regex cache warm between calls)
    """
    if not text:
        return DetectionResult()
    if matcher is None:
        matcher = KeywordMatcher()

    matched: list[MatchedRule] = []
    for rule in rules:
        if not rule.enabled:
            continue
        keywords = matcher.match(text, rule.keywords, rule.match_type, rule.case_sensitive)
        if keywords:
            matched.append(
                MatchedRule(
                    rule_id=rule.id,
                    rule_name=rule.name,
                    matched_keywords=tuple(keywords),
                    target_expert=rule.target_expert,
                    priority=rule.priority,
                )
            )

    if not matched:
        return DetectionResult()

    # Stable: keeps the caller's tie-break order at equal priority
    matched.sort(key=lambda m: -m.priority)
    keyword_count = sum(len(m.matched_keywords) for m in matched)
    confidence = min(1.0, 0.5 + 0.1 * keyword_count)
    return DetectionResult(
        detected=True,
        matched_rules=tuple(matched),
        suggested_expert=matched[0].target_expert,
        confidence=max(0.0, confidence),
    )


def get_rule(config: KeywordConfig, rule_id: str) -> KeywordRule | None:
    for rule in (*config.rules, *config.default_rules):
        if rule.id == rule_id:
            return rule
    return None


def list_rules(
    config: KeywordConfig, include_disabled: bool = False
) -> tuple[list[KeywordRule], list[KeywordRule]]:
    """Return (user_rules, default_rules)."""
    user_rules = [r for r in config.rules if include_disabled or r.enabled]
    default_rules = [r for r in config.default_rules if include_disabled or r.enabled]
    return user_rules, default_rules


def create_rule(
    config: KeywordConfig,
    name: str,
    keywords: Sequence[str],
    target_expert: ExpertId,
    match_type: MatchType = "contains",
    case_sensitive: bool = False,
    priority: int = 50,
    description: str = "",
) -> tuple[KeywordConfig, KeywordRule]:
    """Build a new user rule and return (new_config, rule)."""
    now = now_iso()
    rule = KeywordRule(
        id=generate_id("rule"),
        name=name,
        keywords=tuple(keywords),
        target_expert=target_expert,
        match_type=match_type,
        case_sensitive=case_sensitive,
        priority=priority,
        description=description,
        created_at=now,
        updated_at=now,
    )
    return add_rule(config, rule), rule


def add_rule(config: KeywordConfig, rule: KeywordRule) -> KeywordConfig:
    if get_rule(config, rule.id) is not None:
        raise ValueError(f"duplicate keyword rule id '{rule.id}'")
    return dataclasses.replace(config, rules=(*config.rules, rule))


def update_rule(config: KeywordConfig, rule_id: str, **changes: Any) -> KeywordConfig:
    """Apply a partial update to a rule, refreshing updated_at."""
    unknown = set(changes) - UPDATABLE_RULE_FIELDS
    if unknown:
        raise TypeError(f"cannot update keyword rule fields: {', '.join(sorted(unknown))}")
    if get_rule(config, rule_id) is None:
        raise UnknownIdentifierError(f"unknown keyword rule '{rule_id}'")
    if "keywords" in changes:
        changes["keywords"] = tuple(changes["keywords"])

    now = now_iso()

    def apply(rules: tuple[KeywordRule, ...]) -> tuple[KeywordRule, ...]:
        return tuple(
            dataclasses.replace(r, **changes, updated_at=now) if r.id == rule_id else r
            for r in rules
        )

    return dataclasses.replace(
        config, rules=apply(config.rules), default_rules=apply(config.default_rules)
    )


def remove_rule(config: KeywordConfig, rule_id: str) -> KeywordConfig:
    """Remove a user rule. Built-in rules are disabled instead."""
    rule = get_rule(config, rule_id)
    if rule is None:
        raise UnknownIdentifierError(f"unknown keyword rule '{rule_id}'")
    if rule.builtin:
        return update_rule(config, rule_id, enabled=False)
    return dataclasses.replace(config, rules=tuple(r for r in config.rules if r.id != rule_id))


def toggle_rule(config: KeywordConfig, rule_id: str, enabled: bool) -> KeywordConfig:
    return update_rule(config, rule_id, enabled=enabled)


def set_enabled(config: KeywordConfig, enabled: bool) -> KeywordConfig:
    return dataclasses.replace(config, enabled=enabled)


class KeywordDetector:
    """Detection engine bound to one keyword config snapshot.

    The snapshot is replaced wholesale by reload(); detect() reads whichever
    snapshot was current when it started.
    """

    def __init__(self, config: KeywordConfig) -> None:
        self._snapshot = (config, active_rules(config))
        self._matcher = KeywordMatcher()
        self._stats_lock = threading.Lock()
        self._stats: dict[str, dict[str, Any]] = {}
        logger.info(
            "Keyword detector initialized: enabled=%s user_rules=%d default_rules=%d",
            config.enabled,
            len(config.rules),
            len(config.default_rules),
        )

    @property
    def config(self) -> KeywordConfig:
        return self._snapshot[0]

    @property
    def enabled(self) -> bool:
        return self._snapshot[0].enabled

    def reload(self, config: KeywordConfig) -> None:
        """Adopt a new config snapshot."""
        self._snapshot = (config, active_rules(config))
        logger.info("Keyword detector config reloaded")

    def detect(self, text: str) -> DetectionResult:
        _, rules = self._snapshot
        result = detect(text, rules, self._matcher)
        if result.detected:
            self._record_hits(result)
            logger.debug(
                "Keyword detection: %d rule(s) matched, suggested=%s confidence=%.2f",
                len(result.matched_rules),
                result.suggested_expert,
                result.confidence,
            )
        return result

    def _record_hits(self, result: DetectionResult) -> None:
        now = now_iso()
        with self._stats_lock:
            for matched in result.matched_rules:
                entry = self._stats.setdefault(matched.rule_id, {"hits": 0, "last_hit": ""})
                entry["hits"] += 1
                entry["last_hit"] = now

    def stats(self) -> list[dict[str, Any]]:
        """Per-rule hit counts, most hit first."""
        with self._stats_lock:
            snapshot = {k: dict(v) for k, v in self._stats.items()}
        stats = []
        for rule_id, data in snapshot.items():
            rule = get_rule(self._snapshot[0], rule_id)
            stats.append(
                {
                    "rule_id": rule_id,
                    "name": rule.name if rule else "Unknown",
                    "hits": data["hits"],
                    "last_hit": data["last_hit"],
                }
            )
        return sorted(stats, key=lambda s: s["hits"], reverse=True)

    def summary_by_expert(self) -> dict[str, dict[str, Any]]:
        """Rule count and sample keywords for each routed expert."""
        summary: dict[str, dict[str, Any]] = {}
        for rule in self._snapshot[1]:
            entry = summary.setdefault(rule.target_expert, {"rule_count": 0, "keywords": []})
            entry["rule_count"] += 1
            entry["keywords"].extend(rule.keywords[:3])
        return summary
