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

"""Rule store: loads and saves the keyword and permission tables as YAML."""

import logging
import os
import re
import tempfile
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path
from typing import Any, Literal, TypeVar

import yaml

from .defaults import (
    CONFIG_VERSION,
    DEFAULT_ACTION,
    DEFAULT_PERMISSION_TIMEOUT,
    RISK_LEVEL_ACTIONS,
    RISK_LEVEL_TIMEOUTS,
    SINGLE_USE_LEVELS,
    default_keyword_rules,
    default_risk_patterns,
)
from .errors import StorageError
from .models import (
    ACTIONS,
    EXPERT_IDS,
    MATCH_TYPES,
    OPERATION_CATEGORIES,
    RISK_LEVELS,
    KeywordConfig,
    KeywordRule,
    PermissionConfig,
    PermissionRule,
    RiskPattern,
    require,
)

logger = logging.getLogger(__name__)

Kind = Literal["keyword", "permission"]
KINDS = ("keyword", "permission")

CONFIG_DIR_ENV = "LLM_ROUTER_CONFIG_DIR"
PROJECT_CONFIG_DIR = ".llm-router"
CONFIG_FILES = {"keyword": "keywords.yaml", "permission": "permissions.yaml"}

T = TypeVar("T")


def get_config_dir(project_dir: Path | None = None) -> Path:
    """Directory holding the rule tables."""
    override = os.environ.get(CONFIG_DIR_ENV)
    if override:
        return Path(override).expanduser()
    if project_dir is None:
        project_dir = Path.cwd()
    return project_dir / PROJECT_CONFIG_DIR


def _string_list(data: dict[str, Any], key: str, required: bool = False) -> tuple[str, ...]:
    """Read a list of strings; a scalar in its place is an invalid entry."""
    value = data[key] if required else data.get(key)
    if value is None:
        return ()
    if not isinstance(value, list):
        raise TypeError(f"{key} must be a list")
    return tuple(str(v) for v in value)


def _parse_keyword_rule(data: dict[str, Any]) -> KeywordRule:
    """Parse a rule dictionary into a KeywordRule."""
    return KeywordRule(
        id=str(data["id"]),
        name=str(data.get("name", data["id"])),
        keywords=_string_list(data, "keywords", required=True),
        target_expert=data["target_expert"],
        match_type=data.get("match_type", "contains"),
        case_sensitive=bool(data.get("case_sensitive", False)),
        priority=int(data.get("priority", 50)),
        enabled=bool(data.get("enabled", True)),
        description=data.get("description") or "",
        created_at=str(data.get("created_at", "")),
        updated_at=str(data.get("updated_at", "")),
    )


def _parse_risk_pattern(data: dict[str, Any]) -> RiskPattern:
    """Parse a pattern dictionary into a RiskPattern."""
    return RiskPattern(
        id=str(data["id"]),
        name=str(data.get("name", data["id"])),
        risk_level=data["risk_level"],
        category=data.get("category", "any"),
        keywords=_string_list(data, "keywords"),
        match_type=data.get("match_type", "regex"),
        case_sensitive=bool(data.get("case_sensitive", False)),
        description=data.get("description") or "",
        enabled=bool(data.get("enabled", True)),
        tool_patterns=_string_list(data, "tool_patterns"),
    )


def _parse_permission_rule(data: dict[str, Any]) -> PermissionRule:
    """Parse a rule dictionary into a PermissionRule."""
    return PermissionRule(
        id=str(data["id"]),
        name=str(data.get("name", data["id"])),
        action=data["action"],
        pattern_id=data.get("pattern_id"),
        category=data.get("category"),
        priority=int(data.get("priority", 50)),
        enabled=bool(data.get("enabled", True)),
        description=data.get("description") or "",
        created_at=str(data.get("created_at", "")),
        updated_at=str(data.get("updated_at", "")),
        risk_levels=_string_list(data, "risk_levels"),
        tool_patterns=_string_list(data, "tool_patterns"),
    )


def _parse_entries(
    entries: Any, parse: Callable[[dict[str, Any]], T], what: str
) -> list[T]:
    """Parse a list of entries, skipping (and logging) the invalid ones."""
    if entries is None:
        return []
    if not isinstance(entries, list):
        logger.warning("Ignoring %s: expected a list", what)
        return []
    parsed: list[T] = []
    seen: set[str] = set()
    for i, entry in enumerate(entries):
        try:
            if not isinstance(entry, dict):
                raise TypeError("must be a mapping")
            item = parse(entry)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping invalid %s entry %d: %s", what, i + 1, e)
            continue
        item_id = getattr(item, "id")
        if item_id in seen:
            logger.warning("Skipping duplicate %s entry '%s'", what, item_id)
            continue
        seen.add(item_id)
        parsed.append(item)
    return parsed


def _disabled_ids(data: dict[str, Any]) -> set[str]:
    value = data.get("disabled_defaults") or []
    if not isinstance(value, list):
        logger.warning("Ignoring disabled_defaults: expected a list")
        return set()
    return {str(v) for v in value}


def keyword_config_from_dict(data: dict[str, Any]) -> KeywordConfig:
    """Build a KeywordConfig from file data, seeding built-in rules."""
    disabled = _disabled_ids(data)
    defaults = tuple(
        replace(rule, enabled=rule.id not in disabled)
        for rule in default_keyword_rules()
    )
    default_ids = {r.id for r in defaults}
    rules = [
        r
        for r in _parse_entries(data.get("rules"), _parse_keyword_rule, "keyword rule")
        if r.id not in default_ids
    ]
    return KeywordConfig(
        version=str(data.get("version", CONFIG_VERSION)),
        enabled=bool(data.get("enabled", True)),
        rules=tuple(rules),
        default_rules=defaults,
    )


def _sparse(values: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v is not None}


def keyword_config_to_dict(config: KeywordConfig) -> dict[str, Any]:
    """Serialisable form of a KeywordConfig; built-ins are stored as toggles only."""
    return {
        "version": config.version,
        "enabled": config.enabled,
        "disabled_defaults": [r.id for r in config.default_rules if not r.enabled],
        "rules": [
            _sparse(
                {
                    "id": r.id,
                    "name": r.name,
                    "keywords": list(r.keywords),
                    "match_type": r.match_type if r.match_type != "contains" else None,
                    "case_sensitive": r.case_sensitive if r.case_sensitive else None,
                    "target_expert": r.target_expert,
                    "priority": r.priority,
                    "enabled": r.enabled if not r.enabled else None,
                    "description": r.description if r.description else None,
                    "created_at": r.created_at or None,
                    "updated_at": r.updated_at or None,
                }
            )
            for r in config.rules
        ],
    }


def _mapping_setting(
    data: dict[str, Any], key: str, defaults: dict[str, Any], check: Callable[[Any], Any]
) -> dict[str, Any]:
    """Merge a per-risk-level mapping from file data over defaults."""
    merged = dict(defaults)
    value = data.get(key)
    if value is None:
        return merged
    if not isinstance(value, dict):
        logger.warning("Ignoring %s: expected a mapping", key)
        return merged
    for level, setting in value.items():
        try:
            require(level, RISK_LEVELS, "risk level")
            merged[level] = check(setting)
        except (TypeError, ValueError) as e:
            logger.warning("Ignoring %s.%s: %s", key, level, e)
    return merged


def _positive_number(value: Any) -> float | int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"expected a positive number of seconds, got {value!r}")
    return value


def permission_config_from_dict(data: dict[str, Any]) -> PermissionConfig:
    """Build a PermissionConfig from file data, seeding built-in patterns."""
    disabled = _disabled_ids(data)
    defaults = [
        replace(p, enabled=p.id not in disabled)
        for p in default_risk_patterns()
    ]
    default_ids = {p.id for p in defaults}
    patterns = [
        p
        for p in _parse_entries(data.get("patterns"), _parse_risk_pattern, "risk pattern")
        if p.id not in default_ids
    ]

    default_action = data.get("default_action", DEFAULT_ACTION)
    if not isinstance(default_action, str) or default_action not in ACTIONS:
        logger.warning("Ignoring invalid default_action %r", default_action)
        default_action = DEFAULT_ACTION

    timeout = data.get("permission_timeout", DEFAULT_PERMISSION_TIMEOUT)
    try:
        timeout = _positive_number(timeout)
    except ValueError as e:
        logger.warning("Ignoring permission_timeout: %s", e)
        timeout = DEFAULT_PERMISSION_TIMEOUT

    single_use = data.get("single_use_levels")
    if single_use is None:
        single_use_levels = SINGLE_USE_LEVELS
    elif isinstance(single_use, list) and all(level in RISK_LEVELS for level in single_use):
        single_use_levels = frozenset(single_use)
    else:
        logger.warning("Ignoring invalid single_use_levels %r", single_use)
        single_use_levels = SINGLE_USE_LEVELS

    return PermissionConfig(
        version=str(data.get("version", CONFIG_VERSION)),
        enabled=bool(data.get("enabled", True)),
        default_action=default_action,
        permission_timeout=timeout,
        patterns=(*defaults, *patterns),
        rules=tuple(
            _parse_entries(data.get("rules"), _parse_permission_rule, "permission rule")
        ),
        risk_actions=_mapping_setting(
            data, "risk_actions", RISK_LEVEL_ACTIONS, lambda a: require(a, ACTIONS, "action")
        ),
        risk_timeouts=_mapping_setting(
            data, "risk_timeouts", RISK_LEVEL_TIMEOUTS, _positive_number
        ),
        single_use_levels=single_use_levels,
    )


def permission_config_to_dict(config: PermissionConfig) -> dict[str, Any]:
    """Serialisable form of a PermissionConfig. Session grants are not stored."""
    return {
        "version": config.version,
        "enabled": config.enabled,
        "default_action": config.default_action,
        "permission_timeout": config.permission_timeout,
        "risk_actions": dict(config.risk_actions),
        "risk_timeouts": dict(config.risk_timeouts),
        "single_use_levels": sorted(config.single_use_levels, key=RISK_LEVELS.index),
        "disabled_defaults": [p.id for p in config.patterns if p.builtin and not p.enabled],
        "patterns": [
            _sparse(
                {
                    "id": p.id,
                    "name": p.name,
                    "risk_level": p.risk_level,
                    "category": p.category,
                    "keywords": list(p.keywords) if p.keywords else None,
                    "match_type": p.match_type if p.match_type != "regex" else None,
                    "case_sensitive": p.case_sensitive if p.case_sensitive else None,
                    "enabled": p.enabled if not p.enabled else None,
                    "description": p.description if p.description else None,
                    "tool_patterns": list(p.tool_patterns) if p.tool_patterns else None,
                }
            )
            for p in config.patterns
            if not p.builtin
        ],
        "rules": [
            _sparse(
                {
                    "id": r.id,
                    "name": r.name,
                    "action": r.action,
                    "pattern_id": r.pattern_id,
                    "category": r.category,
                    "risk_levels": list(r.risk_levels) if r.risk_levels else None,
                    "tool_patterns": list(r.tool_patterns) if r.tool_patterns else None,
                    "priority": r.priority,
                    "enabled": r.enabled if not r.enabled else None,
                    "description": r.description if r.description else None,
                    "created_at": r.created_at or None,
                    "updated_at": r.updated_at or None,
                }
            )
            for r in config.rules
        ],
    }


def _read_yaml(path: Path) -> Any:
    with path.open() as f:
        return yaml.safe_load(f)


class RuleStore:
    """Loads and saves the keyword and permission tables.

    load() never fails: a missing file yields the built-in defaults, and a
    corrupt one is logged and replaced by them. save() raises StorageError.
    """

    def __init__(self, config_dir: Path | None = None) -> None:
        self._config_dir = config_dir

    @property
    def config_dir(self) -> Path:
        if self._config_dir is not None:
            return self._config_dir
        return get_config_dir()

    def path(self, kind: Kind) -> Path:
        require(kind, KINDS, "config kind")
        return self.config_dir / CONFIG_FILES[kind]

    def load(self, kind: Kind) -> Any:
        """Load a KeywordConfig ("keyword") or PermissionConfig ("permission")."""
        path = self.path(kind)
        build = keyword_config_from_dict if kind == "keyword" else permission_config_from_dict
        data: Any = None
        if path.exists():
            try:
                data = _read_yaml(path)
            except (OSError, UnicodeDecodeError, yaml.YAMLError) as e:
                logger.warning("Failed to load %s, using defaults: %s", path, e)
                data = None
            else:
                if data is not None and not isinstance(data, dict):
                    logger.warning("Invalid format in %s (expected a mapping), using defaults", path)
                    data = None
        config = build(data or {})
        logger.debug("Loaded %s config from %s", kind, path)
        return config

    def load_keywords(self) -> KeywordConfig:
        config: KeywordConfig = self.load("keyword")
        return config

    def load_permissions(self) -> PermissionConfig:
        config: PermissionConfig = self.load("permission")
        return config

    def save(self, kind: Kind, config: KeywordConfig | PermissionConfig) -> None:
        """Write a config atomically."""
        path = self.path(kind)
        if kind == "keyword":
            if not isinstance(config, KeywordConfig):
                raise TypeError("keyword store expects a KeywordConfig")
            data = keyword_config_to_dict(config)
        else:
            if not isinstance(config, PermissionConfig):
                raise TypeError("permission store expects a PermissionConfig")
            data = permission_config_to_dict(config)

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except (OSError, yaml.YAMLError) as e:
            logger.error("Failed to save %s config to %s: %s", kind, path, e)
            raise StorageError(f"failed to save {kind} config to {path}: {e}") from e
        logger.info("Saved %s config to %s", kind, path)

    def validate(self, kind: Kind) -> list[str]:
        return validate_file(self.path(kind), kind)


def _validate_matcher(entry: dict[str, Any], prefix: str, errors: list[str]) -> None:
    match_type = entry.get("match_type", "regex" if "risk_level" in entry else "contains")
    if not isinstance(match_type, str) or match_type not in MATCH_TYPES:
        valid = ", ".join(sorted(MATCH_TYPES))
        errors.append(f"{prefix}: invalid match_type '{match_type}' (must be: {valid})")
        return
    keywords = entry.get("keywords")
    if keywords is not None and not isinstance(keywords, list):
        errors.append(f"{prefix}: keywords must be a list")
        return
    if match_type == "regex" and keywords:
        try:
            re.compile(str(keywords[0]))
        except re.error as e:
            errors.append(f"{prefix}: invalid regex pattern: {e}")


def _validate_tool_patterns(entry: dict[str, Any], prefix: str, errors: list[str]) -> None:
    tool_patterns = entry.get("tool_patterns")
    if tool_patterns is None:
        return
    if not isinstance(tool_patterns, list):
        errors.append(f"{prefix}: tool_patterns must be a list")
        return
    for source in tool_patterns:
        try:
            re.compile(str(source))
        except re.error as e:
            errors.append(f"{prefix}: invalid tool pattern '{source}': {e}")


def _check_choice(
    entry: dict[str, Any], key: str, choices: Any, prefix: str, errors: list[str], required: bool
) -> None:
    if key not in entry:
        if required:
            errors.append(f"{prefix}: missing required field '{key}'")
        return
    if not isinstance(entry[key], str) or entry[key] not in choices:
        valid = ", ".join(sorted(choices))
        errors.append(f"{prefix}: invalid {key} '{entry[key]}' (must be: {valid})")


def _validate_entry(
    entry: dict[str, Any], index: int, what: str, seen_ids: set[str]
) -> list[str]:
    """Validate a single entry dict, return list of errors."""
    errors: list[str] = []
    prefix = f"{what} {index + 1}"

    if "id" not in entry:
        errors.append(f"{prefix}: missing required field 'id'")
    else:
        entry_id = str(entry["id"])
        prefix = f"{what} '{entry_id}'"
        if entry_id in seen_ids:
            errors.append(f"{prefix}: duplicate id")
        seen_ids.add(entry_id)

    if what == "Keyword rule":
        if not entry.get("keywords"):
            errors.append(f"{prefix}: must have at least one keyword")
        _check_choice(entry, "target_expert", EXPERT_IDS, prefix, errors, required=True)
        _validate_matcher(entry, prefix, errors)
    elif what == "Risk pattern":
        _check_choice(entry, "risk_level", RISK_LEVELS, prefix, errors, required=True)
        _check_choice(entry, "category", OPERATION_CATEGORIES, prefix, errors, required=False)
        _validate_matcher(entry, prefix, errors)
        _validate_tool_patterns(entry, prefix, errors)
    else:
        _check_choice(entry, "action", ACTIONS, prefix, errors, required=True)
        _check_choice(entry, "category", OPERATION_CATEGORIES, prefix, errors, required=False)
        _validate_tool_patterns(entry, prefix, errors)
        risk_levels = entry.get("risk_levels")
        if risk_levels is not None:
            if not isinstance(risk_levels, list):
                errors.append(f"{prefix}: risk_levels must be a list")
            else:
                for level in risk_levels:
                    if level not in RISK_LEVELS:
                        valid = ", ".join(RISK_LEVELS)
                        errors.append(f"{prefix}: invalid risk level '{level}' (must be: {valid})")
        if not any(
            entry.get(key) for key in ("pattern_id", "category", "risk_levels", "tool_patterns")
        ):
            errors.append(
                f"{prefix}: must have 'pattern_id', 'category', 'risk_levels' or 'tool_patterns'"
            )

    if "priority" in entry and not isinstance(entry["priority"], int):
        errors.append(f"{prefix}: priority must be an integer")
    return errors


def validate_file(path: Path, kind: Kind) -> list[str]:
    """Validate a rule table file, return list of error messages (empty if valid)."""
    require(kind, KINDS, "config kind")
    if not path.exists():
        return []

    try:
        data = _read_yaml(path)
    except yaml.YAMLError as e:
        return [f"YAML syntax error: {e}"]
    except (OSError, UnicodeDecodeError) as e:
        return [f"Cannot read file: {e}"]

    if data is None:
        return []
    if not isinstance(data, dict):
        return ["Invalid format: expected a mapping"]

    sections = (
        [("rules", "Keyword rule")]
        if kind == "keyword"
        else [("patterns", "Risk pattern"), ("rules", "Permission rule")]
    )
    errors: list[str] = []
    default_action = data.get("default_action", DEFAULT_ACTION)
    if kind == "permission" and (
        not isinstance(default_action, str) or default_action not in ACTIONS
    ):
        errors.append(f"Invalid default_action '{default_action}'")

    for key, what in sections:
        entries = data.get(key)
        if entries is None:
            continue
        if not isinstance(entries, list):
            errors.append(f"Invalid format: '{key}' must be a list")
            continue
        seen_ids: set[str] = set()
        for i, entry in enumerate(entries):
            if not isinstance(entry, dict):
                errors.append(f"{what} {i + 1}: must be a mapping")
                continue
            errors.extend(_validate_entry(entry, i, what, seen_ids))
    return errors
