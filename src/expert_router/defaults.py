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

"""Built-in keyword routing rules, risk patterns and risk tables."""

import re
from typing import Any

from .models import KeywordRule, RiskPattern

CONFIG_VERSION = "1.0.0"

# Seconds a request waits for a response, and a grant stays valid, per level.
RISK_LEVEL_TIMEOUTS: dict[str, int] = {
    "low": 3600,
    "medium": 1800,
    "high": 600,
    "critical": 300,
}

RISK_LEVEL_ACTIONS: dict[str, str] = {
    "low": "allow",
    "medium": "require_confirmation",
    "high": "require_confirmation",
    "critical": "require_confirmation",
}

# Approvals at these levels are single-use and never cached.
SINGLE_USE_LEVELS: frozenset[str] = frozenset({"critical"})

DEFAULT_PERMISSION_TIMEOUT = 1800
DEFAULT_ACTION = "require_confirmation"

DEFAULT_KEYWORD_RULES: list[dict[str, Any]] = [
    {
        "name": "Architecture Keywords",
        "keywords": ["architecture", "design pattern", "scalability"],
        "target_expert": "strategist",
        "priority": 80,
        "description": "Route architecture and design questions to the strategist",
    },
    {
        "name": "Strategy Keywords",
        "keywords": ["strategy", "approach", "best practice"],
        "target_expert": "strategist",
        "priority": 75,
        "description": "Route requests for strategic advice to the strategist",
    },
    {
        "name": "Documentation Keywords",
        "keywords": ["documentation", "docs", "api reference", "official"],
        "target_expert": "researcher",
        "priority": 80,
        "description": "Route documentation lookups to the researcher",
    },
    {
        "name": "Research Keywords",
        "keywords": ["research", "look up", "search for"],
        "target_expert": "researcher",
        "priority": 70,
        "description": "Route research requests to the researcher",
    },
    {
        "name": "Code Review Keywords",
        "keywords": ["review", "code review", "audit"],
        "target_expert": "reviewer",
        "priority": 85,
        "description": "Route code review requests to the reviewer",
    },
    {
        "name": "Security Keywords",
        "keywords": ["security", "vulnerability", "XSS", "SQL injection", "OWASP"],
        "target_expert": "reviewer",
        "priority": 90,
        "description": "Route security questions to the reviewer",
    },
    {
        "name": "Bug Keywords",
        "keywords": ["bug", "error", "issue", "not working"],
        "target_expert": "reviewer",
        "priority": 70,
        "description": "Route bug reports to the reviewer",
    },
    {
        "name": "UI/UX Keywords",
        "keywords": ["UI", "UX", "design", "style", "CSS", "tailwind"],
        "target_expert": "frontend",
        "priority": 80,
        "description": "Route UI/UX questions to the frontend expert",
    },
    {
        "name": "Component Keywords",
        "keywords": ["component", "React", "Vue", "Angular", "Svelte", "frontend"],
        "target_expert": "frontend",
        "priority": 75,
        "description": "Route frontend component questions to the frontend expert",
    },
    {
        "name": "Documentation Writing Keywords",
        "keywords": ["README", "write docs", "docstring", "comment", "JSDoc"],
        "target_expert": "writer",
        "priority": 80,
        "description": "Route documentation writing to the writer",
    },
    {
        "name": "Quick Search Keywords",
        "keywords": ["find", "where", "file", "location"],
        "target_expert": "explorer",
        "priority": 60,
        "description": "Route file and code searches to the explorer",
    },
]

DEFAULT_RISK_PATTERNS: list[dict[str, Any]] = [
    {
        "name": "File Deletion",
        "category": "file-delete",
        "risk_level": "critical",
        "keywords": [r"rm\s+-rf|rmdir|del\s+/f|Remove-Item.*-Recurse"],
        "description": "Deletes files or directories",
    },
    {
        "name": "Database Drop",
        "category": "destructive",
        "risk_level": "critical",
        "keywords": [r"DROP\s+(TABLE|DATABASE|SCHEMA)|TRUNCATE\s+TABLE"],
        "description": "Drops database tables or schemas",
    },
    {
        "name": "Git Force Push",
        "category": "destructive",
        "risk_level": "critical",
        "keywords": [r"git\s+push.*(--force|-f\b)"],
        "description": "Force-pushes git history",
    },
    {
        "name": "Git Hard Reset",
        "category": "destructive",
        "risk_level": "critical",
        "keywords": [r"git\s+reset\s+--hard"],
        "description": "Discards git working tree changes",
    },
    {
        "name": "Environment File Change",
        "category": "config-change",
        "risk_level": "high",
        "keywords": [r"\.env\b"],
        "description": "Touches environment variable files",
    },
    {
        "name": "Credential File Access",
        "category": "credential-access",
        "risk_level": "high",
        "keywords": [r"credentials|secrets|api[_-]?key|password|token"],
        "description": "Accesses credential material",
    },
    {
        "name": "System Config Change",
        "category": "config-change",
        "risk_level": "high",
        "keywords": [r"/etc/|system32|registry"],
        "description": "Changes system configuration",
    },
    {
        "name": "Package Install",
        "category": "shell-execute",
        "risk_level": "high",
        "keywords": [
            r"npm\s+install(?!.*--save-dev)|pip\s+install|apt(-get)?\s+install|brew\s+install"
        ],
        "description": "Installs packages and changes dependencies",
    },
    {
        "name": "Bulk File Operation",
        "category": "bulk-operation",
        "risk_level": "medium",
        "keywords": [r"find\s.*-exec|xargs|for\s.*\sin\s.*;\s*do"],
        "description": "Operates on many files at once",
    },
    {
        "name": "External API Call",
        "category": "network-call",
        "risk_level": "medium",
        "keywords": [r"curl\s+|wget\s+|fetch\(|axios\.|http\.request"],
        "description": "Calls an external API",
    },
    {
        "name": "Config File Write",
        "category": "config-change",
        "risk_level": "medium",
        "keywords": [r"package\.json|tsconfig|webpack\.config|\.eslintrc|pyproject\.toml"],
        "description": "Writes project configuration files",
    },
    {
        "name": "Source File Write",
        "category": "file-write",
        "risk_level": "low",
        "keywords": [r"\.(ts|js|tsx|jsx|py|go)$"],
        "description": "Modifies source code files",
    },
    {
        "name": "Documentation Write",
        "category": "file-write",
        "risk_level": "low",
        "keywords": [r"\.(md|txt|rst)$|README"],
        "description": "Modifies documentation files",
    },
]


def _slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")


def default_id(index: int, name: str) -> str:
    """Stable id for a built-in entry."""
    return f"default_{index}_{_slug(name)}"


def default_keyword_rules(timestamp: str = "") -> tuple[KeywordRule, ...]:
    """Build the built-in keyword rules."""
    return tuple(
        KeywordRule(
            id=default_id(i, data["name"]),
            name=data["name"],
            keywords=tuple(data["keywords"]),
            target_expert=data["target_expert"],
            match_type="contains",
            case_sensitive=False,
            priority=data["priority"],
            description=data["description"],
            created_at=timestamp,
            updated_at=timestamp,
            builtin=True,
        )
        for i, data in enumerate(DEFAULT_KEYWORD_RULES)
    )


def default_risk_patterns() -> tuple[RiskPattern, ...]:
    """Build the built-in risk patterns."""
    return tuple(
        RiskPattern(
            id=default_id(i, data["name"]),
            name=data["name"],
            risk_level=data["risk_level"],
            category=data["category"],
            keywords=tuple(data["keywords"]),
            match_type="regex",
            description=data["description"],
            builtin=True,
        )
        for i, data in enumerate(DEFAULT_RISK_PATTERNS)
    )
