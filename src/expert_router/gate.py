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

"""Permission gate: decides allow / deny / ask for risky operations.

The gate owns the session grant cache and the table of pending permission
requests. Configs are immutable snapshots; every config operation in this
module returns a new PermissionConfig which the caller persists and hands
back to the gate with reload().
"""

import asyncio
import dataclasses
import inspect
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from .classifier import classify, tool_matches
from .errors import UnknownIdentifierError, UnknownRequestError
from .grants import SessionGrantCache
from .matcher import KeywordMatcher
from .models import (
    DECISIONS,
    UNCLASSIFIED,
    Action,
    Classification,
    Decision,
    MatchType,
    Operation,
    OperationCategory,
    PermissionCheckResult,
    PermissionConfig,
    PermissionRequest,
    PermissionRule,
    RiskLevel,
    RiskPattern,
    generate_id,
    now_iso,
    require,
)

logger = logging.getLogger(__name__)

# Settled requests kept around so late waiters can still read the outcome.
MAX_SETTLED_REQUESTS = 256

UPDATABLE_PATTERN_FIELDS = frozenset(
    {"name", "keywords", "match_type", "case_sensitive", "risk_level", "category",
     "description", "enabled", "tool_patterns"}
)
UPDATABLE_RULE_FIELDS = frozenset(
    {"name", "action", "pattern_id", "category", "priority", "enabled", "description",
     "risk_levels", "tool_patterns"}
)


class ConfirmationProvider(ABC):
    """Resolves pending permission requests (a human prompt, a policy, ...)."""

    @abstractmethod
    async def request_confirmation(self, request: PermissionRequest) -> Decision:
        """Return "approve" or "deny" for request."""


class CallbackConfirmationProvider(ConfirmationProvider):
    """Adapts a plain (sync or async) callable to ConfirmationProvider."""

    def __init__(self, callback: Callable[[PermissionRequest], Decision | Awaitable[Decision]]):
        self._callback = callback

    async def request_confirmation(self, request: PermissionRequest) -> Decision:
        result = self._callback(request)
        if inspect.isawaitable(result):
            result = await result
        return result


@dataclass
class _Entry:
    request: PermissionRequest
    matched_patterns: tuple[RiskPattern, ...]
    status: str = "pending"
    reason: str = "awaiting confirmation"
    waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Future[str]]] = field(
        default_factory=list
    )


def _wake(future: "asyncio.Future[str]", status: str) -> None:
    if not future.done():
        future.set_result(status)


def _pattern_names(patterns: Sequence[RiskPattern]) -> str:
    return ", ".join(p.name for p in patterns)


class PermissionGate:
    """Checks operations against risk patterns, override rules and grants.

    One gate per request-handling pipeline; construct a fresh gate to reset.
    """

    def __init__(
        self,
        config: PermissionConfig,
        cache: SessionGrantCache | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self._cache = cache if cache is not None else SessionGrantCache(clock)
        self._matcher = KeywordMatcher()
        self._lock = threading.Lock()
        self._requests: OrderedDict[str, _Entry] = OrderedDict()
        self._stats = {"checks": 0, "auto_allowed": 0, "approved": 0, "denied": 0, "expired": 0}
        self._config = dataclasses.replace(config, session_grants=self._cache.pattern_ids())
        logger.info(
            "Permission gate initialized: enabled=%s patterns=%d rules=%d",
            config.enabled,
            len(config.patterns),
            len(config.rules),
        )

    @property
    def config(self) -> PermissionConfig:
        return self._config

    @property
    def cache(self) -> SessionGrantCache:
        return self._cache

    def reload(self, config: PermissionConfig) -> None:
        """Adopt a new config snapshot; session grants carry over."""
        with self._lock:
            self._config = dataclasses.replace(config, session_grants=self._cache.pattern_ids())
        logger.info("Permission config reloaded")

    def _count(self, key: str) -> None:
        with self._lock:
            self._stats[key] += 1

    def check_permission(self, operation: Operation) -> PermissionCheckResult:
        """Decide whether operation may run now, is denied, or needs confirmation."""
        config = self._config
        self._count("checks")

        if not config.enabled:
            self._count("auto_allowed")
            return PermissionCheckResult(
                status="auto_allowed", risk_level=UNCLASSIFIED, reason="permission system disabled"
            )

        classification = classify(operation, config, self._matcher)
        level = classification.risk_level
        patterns = classification.matched_patterns

        if level not in config.single_use_levels:
            for pattern in patterns:
                if self._cache.is_valid(pattern.id, config):
                    self._count("auto_allowed")
                    return PermissionCheckResult(
                        status="auto_allowed",
                        risk_level=level,
                        matched_patterns=patterns,
                        reason=f"already approved this session ({pattern.name})",
                    )

        action, rule = resolve_action(operation, classification, config, self._matcher)

        if action == "allow":
            self._count("auto_allowed")
            if rule is not None:
                reason = f"allowed by rule '{rule.name}'"
            elif level == UNCLASSIFIED:
                reason = "no risk pattern matched"
            else:
                reason = f"{level} risk allowed by default"
            return PermissionCheckResult(
                status="auto_allowed", risk_level=level, matched_patterns=patterns, reason=reason
            )

        if action == "deny":
            self._count("denied")
            what = _pattern_names(patterns) or operation.category
            reason = f"denied: {what} ({level} risk)"
            if rule is not None:
                reason += f" by rule '{rule.name}'"
            logger.info("Operation denied: %s", reason)
            return PermissionCheckResult(
                status="denied", risk_level=level, matched_patterns=patterns, reason=reason
            )

        request = self._create_request(operation, classification, config)
        return PermissionCheckResult(
            status="pending",
            risk_level=level,
            matched_patterns=patterns,
            request=request,
            reason="confirmation required",
        )

    def _create_request(
        self, operation: Operation, classification: Classification, config: PermissionConfig
    ) -> PermissionRequest:
        level = classification.risk_level
        patterns = classification.matched_patterns
        timeout = config.risk_timeouts.get(level, config.permission_timeout)
        now = self._clock()
        request = PermissionRequest(
            id=generate_id("req"),
            operation=operation,
            pattern_ids=tuple(p.id for p in patterns),
            pattern_names=tuple(p.name for p in patterns),
            risk_level=level,
            description=describe_operation(operation, patterns),
            requested_at=now,
            deadline=now + timeout,
        )
        with self._lock:
            self._expire_stale_locked(now)
            self._requests[request.id] = _Entry(request=request, matched_patterns=patterns)
        logger.info(
            "Permission request %s created: risk=%s patterns=[%s]",
            request.id,
            level,
            ", ".join(request.pattern_names),
        )
        return request

    def _settle(self, entry: _Entry, status: str, reason: str) -> None:
        """Move a pending entry to a final status and wake its waiters. Lock held."""
        entry.status = status
        entry.reason = reason
        self._stats[status] += 1
        for loop, future in entry.waiters:
            loop.call_soon_threadsafe(_wake, future, status)
        entry.waiters.clear()
        logger.info("Permission request %s %s: %s", entry.request.id, status, reason)

        settled = [rid for rid, e in self._requests.items() if e.status != "pending"]
        for rid in settled[: max(0, len(settled) - MAX_SETTLED_REQUESTS)]:
            del self._requests[rid]

    def _get_entry(self, request_id: str) -> _Entry:
        entry = self._requests.get(request_id)
        if entry is None:
            raise UnknownRequestError(request_id)
        if entry.status == "pending" and self._clock() >= entry.request.deadline:
            self._settle(entry, "expired", "no response before deadline")
        return entry

    def resolve_request(self, request_id: str, decision: Decision) -> str:
        """Apply a confirmation decision and return the request's final status.

        Approval records a session grant for every matched pattern unless the
        risk level is single-use. Resolving after the deadline yields
        "expired"; resolving an already settled request changes nothing.
        """
        require(decision, DECISIONS, "decision")
        with self._lock:
            entry = self._get_entry(request_id)
            if entry.status != "pending":
                return entry.status
            if decision == "deny":
                self._settle(entry, "denied", "denied by user")
                return entry.status

            config = self._config
            if entry.request.risk_level not in config.single_use_levels:
                for pattern_id in entry.request.pattern_ids:
                    self._cache.grant(pattern_id)
                self._config = dataclasses.replace(
                    config, session_grants=self._cache.pattern_ids()
                )
            self._settle(entry, "approved", "approved by user")
            return entry.status

    def _result_for(self, entry: _Entry) -> PermissionCheckResult:
        return PermissionCheckResult(
            status=entry.status,  # type: ignore[arg-type]
            risk_level=entry.request.risk_level,
            matched_patterns=entry.matched_patterns,
            request=entry.request,
            reason=entry.reason,
        )

    def _expire(self, request_id: str, reason: str) -> None:
        with self._lock:
            entry = self._requests.get(request_id)
            if entry is not None and entry.status == "pending":
                self._settle(entry, "expired", reason)

    async def wait_for_decision(self, request_id: str) -> PermissionCheckResult:
        """Suspend until the request is resolved or its deadline passes.

        Cancelling the waiting task expires the request immediately.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()
        with self._lock:
            entry = self._get_entry(request_id)
            if entry.status != "pending":
                return self._result_for(entry)
            entry.waiters.append((loop, future))
            remaining = max(0.0, entry.request.deadline - self._clock())

        try:
            await asyncio.wait_for(future, timeout=remaining)
        except asyncio.TimeoutError:
            self._expire(request_id, "no response before deadline")
        except asyncio.CancelledError:
            self._expire(request_id, "cancelled")
            raise

        with self._lock:
            return self._result_for(entry)

    async def authorize(
        self, operation: Operation, provider: ConfirmationProvider | None = None
    ) -> PermissionCheckResult:
        """Check an operation and, if it needs confirmation, ask provider and wait."""
        result = self.check_permission(operation)
        if result.status != "pending" or result.request is None:
            return result
        request = result.request
        if provider is None:
            return await self.wait_for_decision(request.id)

        task = asyncio.ensure_future(provider.request_confirmation(request))
        task.add_done_callback(lambda t: self._on_confirmation(request.id, t))
        try:
            return await self.wait_for_decision(request.id)
        finally:
            task.cancel()

    def _on_confirmation(self, request_id: str, task: "asyncio.Future[Decision]") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("Confirmation for %s failed: %s", request_id, error)
            self._expire(request_id, f"confirmation failed: {error}")
            return
        decision = task.result()
        if decision not in DECISIONS:
            logger.error("Confirmation for %s returned invalid decision %r", request_id, decision)
            self._expire(request_id, f"invalid decision {decision!r}")
            return
        self.resolve_request(request_id, decision)

    def get_request(self, request_id: str) -> PermissionRequest | None:
        """Return the request if it is still pending."""
        with self._lock:
            entry = self._requests.get(request_id)
            if entry is None:
                return None
            entry = self._get_entry(request_id)
            return entry.request if entry.status == "pending" else None

    def _expire_stale_locked(self, now: float) -> int:
        count = 0
        for entry in list(self._requests.values()):
            if entry.status == "pending" and now >= entry.request.deadline:
                self._settle(entry, "expired", "no response before deadline")
                count += 1
        return count

    def expire_stale(self) -> int:
        """Expire every pending request past its deadline; return how many."""
        now = self._clock()
        with self._lock:
            return self._expire_stale_locked(now)

    def pending_requests(self) -> list[PermissionRequest]:
        self.expire_stale()
        with self._lock:
            return [e.request for e in self._requests.values() if e.status == "pending"]

    def grant_session(self, pattern_id: str) -> PermissionConfig:
        """Manually approve a pattern for the rest of the session."""
        with self._lock:
            config = self._config
            if config.get_pattern(pattern_id) is None:
                raise UnknownIdentifierError(f"unknown risk pattern '{pattern_id}'")
            self._cache.grant(pattern_id)
            self._config = dataclasses.replace(config, session_grants=self._cache.pattern_ids())
            return self._config

    def revoke_session(self, pattern_id: str) -> PermissionConfig:
        with self._lock:
            self._cache.revoke(pattern_id)
            self._config = dataclasses.replace(
                self._config, session_grants=self._cache.pattern_ids()
            )
            return self._config

    def clear_session_grants(self) -> PermissionConfig:
        with self._lock:
            self._cache.clear()
            self._config = dataclasses.replace(self._config, session_grants=frozenset())
        logger.info("Session grants cleared")
        return self._config

    def stats(self) -> dict[str, int]:
        pending = len(self.pending_requests())
        with self._lock:
            stats = dict(self._stats)
        stats["pending"] = pending
        stats["session_grants"] = len(self._cache)
        return stats


def rule_applies(
    rule: PermissionRule,
    operation: Operation,
    classification: Classification,
    matcher: KeywordMatcher,
) -> bool:
    """Check whether an enabled override rule covers a classified operation."""
    if not rule.enabled:
        return False
    patterns = classification.matched_patterns
    if rule.pattern_id is not None or rule.category is not None:
        categories = {operation.category, *(p.category for p in patterns)}
        targeted = (
            rule.pattern_id is not None and any(p.id == rule.pattern_id for p in patterns)
        ) or (rule.category is not None and (rule.category == "any" or rule.category in categories))
        if not targeted:
            return False
    if rule.risk_levels and classification.risk_level not in rule.risk_levels:
        return False
    if rule.tool_patterns and not tool_matches(rule.tool_patterns, operation.tool_name, matcher):
        return False
    return True


def resolve_action(
    operation: Operation,
    classification: Classification,
    config: PermissionConfig,
    matcher: KeywordMatcher | None = None,
) -> tuple[str, PermissionRule | None]:
    """Pick the action for a classified operation.

    The highest-priority override rule that applies wins (first in list order
    on ties); otherwise the default action for unclassified operations, or the
    risk level's action.
    """
    if matcher is None:
        matcher = KeywordMatcher()
    candidates = [
        rule for rule in config.rules if rule_applies(rule, operation, classification, matcher)
    ]
    if candidates:
        rule = max(candidates, key=lambda r: r.priority)
        return rule.action, rule
    if classification.risk_level == UNCLASSIFIED:
        return config.default_action, None
    return config.risk_actions.get(classification.risk_level, config.default_action), None


def describe_operation(operation: Operation, patterns: Sequence[RiskPattern]) -> str:
    """Human-readable one-liner for a permission prompt."""
    detail = operation.detail if len(operation.detail) <= 80 else operation.detail[:77] + "..."
    subject = operation.tool_name or operation.category
    names = _pattern_names(patterns)
    if names:
        return f"{subject}: {detail} ({names})"
    return f"{subject}: {detail}"


def get_rule(config: PermissionConfig, rule_id: str) -> PermissionRule | None:
    for rule in config.rules:
        if rule.id == rule_id:
            return rule
    return None


def _require_pattern(config: PermissionConfig, pattern_id: str) -> RiskPattern:
    pattern = config.get_pattern(pattern_id)
    if pattern is None:
        raise UnknownIdentifierError(f"unknown risk pattern '{pattern_id}'")
    return pattern


def create_pattern(
    config: PermissionConfig,
    name: str,
    risk_level: RiskLevel,
    category: OperationCategory,
    keywords: Sequence[str] = (),
    match_type: MatchType = "regex",
    case_sensitive: bool = False,
    description: str = "",
    tool_patterns: Sequence[str] = (),
) -> tuple[PermissionConfig, RiskPattern]:
    """Build a new user pattern and return (new_config, pattern)."""
    pattern = RiskPattern(
        id=generate_id("pattern"),
        name=name,
        risk_level=risk_level,
        category=category,
        keywords=tuple(keywords),
        match_type=match_type,
        case_sensitive=case_sensitive,
        description=description,
        tool_patterns=tuple(tool_patterns),
    )
    return add_pattern(config, pattern), pattern


def add_pattern(config: PermissionConfig, pattern: RiskPattern) -> PermissionConfig:
    if config.get_pattern(pattern.id) is not None:
        raise ValueError(f"duplicate risk pattern id '{pattern.id}'")
    return dataclasses.replace(config, patterns=(*config.patterns, pattern))


def update_pattern(config: PermissionConfig, pattern_id: str, **changes: Any) -> PermissionConfig:
    unknown = set(changes) - UPDATABLE_PATTERN_FIELDS
    if unknown:
        raise TypeError(f"cannot update risk pattern fields: {', '.join(sorted(unknown))}")
    _require_pattern(config, pattern_id)
    if "keywords" in changes:
        changes["keywords"] = tuple(changes["keywords"])
    return dataclasses.replace(
        config,
        patterns=tuple(
            dataclasses.replace(p, **changes) if p.id == pattern_id else p for p in config.patterns
        ),
    )


def remove_pattern(config: PermissionConfig, pattern_id: str) -> PermissionConfig:
    """Remove a user pattern. Built-in patterns are disabled instead."""
    pattern = _require_pattern(config, pattern_id)
    if pattern.builtin:
        return update_pattern(config, pattern_id, enabled=False)
    return dataclasses.replace(
        config,
        patterns=tuple(p for p in config.patterns if p.id != pattern_id),
        session_grants=config.session_grants - {pattern_id},
    )


def toggle_pattern(config: PermissionConfig, pattern_id: str, enabled: bool) -> PermissionConfig:
    return update_pattern(config, pattern_id, enabled=enabled)


def create_rule(
    config: PermissionConfig,
    name: str,
    action: Action,
    pattern_id: str | None = None,
    category: OperationCategory | None = None,
    priority: int = 50,
    description: str = "",
    risk_levels: Sequence[RiskLevel] = (),
    tool_patterns: Sequence[str] = (),
) -> tuple[PermissionConfig, PermissionRule]:
    """Build a new override rule and return (new_config, rule)."""
    if pattern_id is not None:
        _require_pattern(config, pattern_id)
    now = now_iso()
    rule = PermissionRule(
        id=generate_id("rule"),
        name=name,
        action=action,
        pattern_id=pattern_id,
        category=category,
        priority=priority,
        description=description,
        created_at=now,
        updated_at=now,
        risk_levels=tuple(risk_levels),
        tool_patterns=tuple(tool_patterns),
    )
    return add_rule(config, rule), rule


def add_rule(config: PermissionConfig, rule: PermissionRule) -> PermissionConfig:
    if get_rule(config, rule.id) is not None:
        raise ValueError(f"duplicate permission rule id '{rule.id}'")
    return dataclasses.replace(config, rules=(*config.rules, rule))


def update_rule(config: PermissionConfig, rule_id: str, **changes: Any) -> PermissionConfig:
    """Apply a partial update to a rule, refreshing updated_at."""
    unknown = set(changes) - UPDATABLE_RULE_FIELDS
    if unknown:
        raise TypeError(f"cannot update permission rule fields: {', '.join(sorted(unknown))}")
    if get_rule(config, rule_id) is None:
        raise UnknownIdentifierError(f"unknown permission rule '{rule_id}'")
    if changes.get("pattern_id") is not None:
        _require_pattern(config, changes["pattern_id"])
    now = now_iso()
    return dataclasses.replace(
        config,
        rules=tuple(
            dataclasses.replace(r, **changes, updated_at=now) if r.id == rule_id else r
            for r in config.rules
        ),
    )


def remove_rule(config: PermissionConfig, rule_id: str) -> PermissionConfig:
    if get_rule(config, rule_id) is None:
        raise UnknownIdentifierError(f"unknown permission rule '{rule_id}'")
    return dataclasses.replace(config, rules=tuple(r for r in config.rules if r.id != rule_id))


def set_enabled(config: PermissionConfig, enabled: bool) -> PermissionConfig:
    return dataclasses.replace(config, enabled=enabled)
