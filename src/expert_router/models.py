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

"""Data models for keyword routing rules, risk patterns and permission checks."""

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Literal

from .errors import UnknownIdentifierError

ExpertId = Literal["strategist", "researcher", "reviewer", "frontend", "writer", "explorer"]
MatchType = Literal["exact", "contains", "startsWith", "endsWith", "regex"]
RiskLevel = Literal["low", "medium", "high", "critical"]
OperationCategory = Literal[
    "file-read",
    "file-write",
    "file-delete",
    "config-change",
    "shell-execute",
    "network-call",
    "credential-access",
    "auth-change",
    "data-export",
    "destructive",
    "bulk-operation",
    "any",
]
Action = Literal["allow", "require_confirmation", "deny"]
PermissionStatus = Literal["pending", "approved", "denied", "expired", "auto_allowed"]
Decision = Literal["approve", "deny"]

EXPERT_IDS: frozenset[str] = frozenset(
    {"strategist", "researcher", "reviewer", "frontend", "writer", "explorer"}
)
MATCH_TYPES: frozenset[str] = frozenset({"exact", "contains", "startsWith", "endsWith", "regex"})
RISK_LEVELS: tuple[str, ...] = ("low", "medium", "high", "critical")
OPERATION_CATEGORIES: frozenset[str] = frozenset(
    {
        "file-read",
        "file-write",
        "file-delete",
        "config-change",
        "shell-execute",
        "network-call",
        "credential-access",
        "auth-change",
        "data-export",
        "destructive",
        "bulk-operation",
        "any",
    }
)
ACTIONS: frozenset[str] = frozenset({"allow", "require_confirmation", "deny"})
DECISIONS: frozenset[str] = frozenset({"approve", "deny"})

# Returned by the classifier when no pattern matched.
UNCLASSIFIED = "unclassified"


def require(value: str, vocabulary: frozenset[str] | tuple[str, ...], kind: str) -> str:
    """Return value if it belongs to vocabulary, else raise UnknownIdentifierError."""
    if value not in vocabulary:
        valid = ", ".join(sorted(vocabulary))
        raise UnknownIdentifierError(f"unknown {kind} '{value}' (must be: {valid})")
    return value


def severity(level: str) -> int:
    """Rank of a risk level; unclassified ranks below low."""
    if level == UNCLASSIFIED:
        return -1
    return RISK_LEVELS.index(require(level, RISK_LEVELS, "risk level"))


def now_iso() -> str:
    """Current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def generate_id(prefix: str) -> str:
    """Generate a unique id for a user-defined entry."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class KeywordRule:
    """A routing rule sending matching text to an expert."""

    id: str
    name: str
    keywords: tuple[str, ...]
    target_expert: ExpertId
    match_type: MatchType = "contains"
    case_sensitive: bool = False
    priority: int = 50
    enabled: bool = True
    description: str = ""
    created_at: str = ""
    updated_at: str = ""
    builtin: bool = False

    def __post_init__(self) -> None:
        if not self.keywords:
            raise ValueError(f"keyword rule '{self.id}' needs at least one keyword")
        object.__setattr__(self, "keywords", tuple(self.keywords))
        require(self.match_type, MATCH_TYPES, "match type")
        require(self.target_expert, EXPERT_IDS, "expert")


@dataclass(frozen=True)
class MatchedRule:
    """A rule that hit during detection."""

    rule_id: str
    rule_name: str
    matched_keywords: tuple[str, ...]
    target_expert: ExpertId
    priority: int


@dataclass(frozen=True)
class DetectionResult:
    """Outcome of running keyword detection over a piece of text."""

    detected: bool = False
    matched_rules: tuple[MatchedRule, ...] = ()
    suggested_expert: ExpertId | None = None
    confidence: float = 0.0


@dataclass(frozen=True)
class KeywordConfig:
    """Keyword routing table: user rules plus built-in defaults."""

    version: str = "1.0.0"
    enabled: bool = True
    rules: tuple[KeywordRule, ...] = ()
    default_rules: tuple[KeywordRule, ...] = ()


@dataclass(frozen=True)
class RiskPattern:
    """Flags operations whose detail, tool or category looks risky.

    tool_patterns are case-insensitive regexes tried against the operation's
    tool name; a hit there matches regardless of detail. An empty keyword
    list makes the pattern category-only (every operation of its category
    matches) unless it has tool patterns, which then decide alone.
    """

    id: str
    name: str
    risk_level: RiskLevel
    category: OperationCategory
    keywords: tuple[str, ...] = ()
    match_type: MatchType = "regex"
    case_sensitive: bool = False
    description: str = ""
    enabled: bool = True
    builtin: bool = False
    tool_patterns: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "keywords", tuple(self.keywords))
        object.__setattr__(self, "tool_patterns", tuple(self.tool_patterns))
        require(self.match_type, MATCH_TYPES, "match type")
        require(self.risk_level, RISK_LEVELS, "risk level")
        require(self.category, OPERATION_CATEGORIES, "operation category")


@dataclass(frozen=True)
class PermissionRule:
    """Overrides the action for operations matching its conditions.

    pattern_id and category select the operations the rule targets (either
    may hit). risk_levels (the overall classified level) and tool_patterns
    (regexes on the tool name) narrow the match; each one given must hold.
    """

    id: str
    name: str
    action: Action
    pattern_id: str | None = None
    category: OperationCategory | None = None
    priority: int = 50
    enabled: bool = True
    description: str = ""
    created_at: str = ""
    updated_at: str = ""
    risk_levels: tuple[RiskLevel, ...] = ()
    tool_patterns: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "risk_levels", tuple(self.risk_levels))
        object.__setattr__(self, "tool_patterns", tuple(self.tool_patterns))
        if (
            self.pattern_id is None
            and self.category is None
            and not self.risk_levels
            and not self.tool_patterns
        ):
            raise ValueError(
                f"permission rule '{self.id}' needs a pattern_id, category, "
                "risk_levels or tool_patterns"
            )
        require(self.action, ACTIONS, "action")
        if self.category is not None:
            require(self.category, OPERATION_CATEGORIES, "operation category")
        for level in self.risk_levels:
            require(level, RISK_LEVELS, "risk level")


def _default_risk_actions() -> Mapping[str, str]:
    from .defaults import RISK_LEVEL_ACTIONS

    return RISK_LEVEL_ACTIONS


def _default_risk_timeouts() -> Mapping[str, int]:
    from .defaults import RISK_LEVEL_TIMEOUTS

    return RISK_LEVEL_TIMEOUTS


@dataclass(frozen=True)
class PermissionConfig:
    """Risk patterns, override rules and gate settings.

    session_grants is the runtime view of the grant cache; it is never
    persisted. The per-level tables are read-only copies, so snapshots
    derived with dataclasses.replace never share a mutable table.
    """

    version: str = "1.0.0"
    enabled: bool = True
    default_action: Action = "require_confirmation"
    permission_timeout: int = 1800
    patterns: tuple[RiskPattern, ...] = ()
    rules: tuple[PermissionRule, ...] = ()
    session_grants: frozenset[str] = frozenset()
    risk_actions: Mapping[str, str] = field(default_factory=_default_risk_actions)
    risk_timeouts: Mapping[str, int] = field(default_factory=_default_risk_timeouts)
    single_use_levels: frozenset[str] = frozenset({"critical"})

    def __post_init__(self) -> None:
        object.__setattr__(self, "risk_actions", MappingProxyType(dict(self.risk_actions)))
        object.__setattr__(self, "risk_timeouts", MappingProxyType(dict(self.risk_timeouts)))

    def get_pattern(self, pattern_id: str) -> RiskPattern | None:
        for pattern in self.patterns:
            if pattern.id == pattern_id:
                return pattern
        return None


def effective_timeout(pattern: RiskPattern, config: PermissionConfig) -> int:
    """Seconds a grant for pattern stays valid under config."""
    timeout = config.risk_timeouts.get(pattern.risk_level)
    if timeout is None:
        return config.permission_timeout
    return timeout


@dataclass(frozen=True)
class Operation:
    """An action an expert is about to perform."""

    category: OperationCategory
    detail: str
    tool_name: str | None = None

    def __post_init__(self) -> None:
        require(self.category, OPERATION_CATEGORIES, "operation category")
        if not isinstance(self.detail, str):
            raise TypeError(f"operation detail must be a string, got {type(self.detail).__name__}")


@dataclass(frozen=True)
class Classification:
    """Risk level and patterns matched for an operation."""

    risk_level: str
    matched_patterns: tuple[RiskPattern, ...] = ()


@dataclass(frozen=True)
class PermissionRequest:
    """A pending confirmation handed to a human or policy."""

    id: str
    operation: Operation
    pattern_ids: tuple[str, ...]
    pattern_names: tuple[str, ...]
    risk_level: str
    description: str
    requested_at: float
    deadline: float


@dataclass(frozen=True)
class PermissionCheckResult:
    """Final decision for an operation."""

    status: PermissionStatus
    risk_level: str
    matched_patterns: tuple[RiskPattern, ...] = ()
    request: PermissionRequest | None = None
    reason: str = ""

    @property
    def allowed(self) -> bool:
        return self.status in ("auto_allowed", "approved")


@dataclass(frozen=True)
class SessionGrant:
    """Runtime record that a pattern was approved for this session."""

    pattern_id: str
    granted_at: float
