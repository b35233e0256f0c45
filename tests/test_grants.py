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

"""Tests for the session grant cache."""

import threading

import pytest

from expert_router.grants import SessionGrantCache
from expert_router.models import PermissionConfig, RiskPattern


class FakeClock:
    """Manually advanced clock."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> PermissionConfig:
    pattern = RiskPattern(id="net", name="Network", risk_level="medium", category="network-call")
    return PermissionConfig(patterns=(pattern,), risk_timeouts={"medium": 60})


def test_grant_valid_until_timeout(clock: FakeClock, config: PermissionConfig) -> None:
    """Test a grant at t=0 with timeout 60 is valid at 59 and invalid at 61."""
    cache = SessionGrantCache(clock)
    cache.grant("net")
    clock.now = 59
    assert cache.is_valid("net", config)
    clock.now = 61
    assert not cache.is_valid("net", config)


def test_grant_boundary_is_exclusive(clock: FakeClock, config: PermissionConfig) -> None:
    """Test a grant is no longer valid exactly at the timeout."""
    cache = SessionGrantCache(clock)
    cache.grant("net")
    clock.now = 60
    assert not cache.is_valid("net", config)


def test_expired_grant_is_dropped(clock: FakeClock, config: PermissionConfig) -> None:
    """Test reading an expired grant removes it."""
    cache = SessionGrantCache(clock)
    cache.grant("net")
    clock.now = 100
    cache.is_valid("net", config)
    assert "net" not in cache
    assert len(cache) == 0


def test_permission_timeout_used_without_level_timeout(clock: FakeClock) -> None:
    """Test the config-wide timeout applies when the level has none."""
    pattern = RiskPattern(id="net", name="Network", risk_level="medium", category="network-call")
    config = PermissionConfig(patterns=(pattern,), risk_timeouts={}, permission_timeout=10)
    cache = SessionGrantCache(clock)
    cache.grant("net")
    clock.now = 9
    assert cache.is_valid("net", config)
    clock.now = 11
    assert not cache.is_valid("net", config)


def test_grant_is_idempotent(clock: FakeClock, config: PermissionConfig) -> None:
    """Test granting twice keeps one entry and refreshes its timestamp."""
    cache = SessionGrantCache(clock)
    cache.grant("net")
    clock.now = 50
    grant = cache.grant("net")
    assert len(cache) == 1
    assert grant.granted_at == 50
    clock.now = 100
    assert cache.is_valid("net", config)


def test_revoke_missing_is_noop(clock: FakeClock) -> None:
    """Test revoking a grant that does not exist does nothing."""
    cache = SessionGrantCache(clock)
    cache.revoke("missing")
    cache.grant("net")
    cache.revoke("net")
    assert len(cache) == 0


def test_unknown_pattern_is_invalid(clock: FakeClock, config: PermissionConfig) -> None:
    """Test grants for patterns not in config are never valid."""
    cache = SessionGrantCache(clock)
    cache.grant("gone")
    assert not cache.is_valid("gone", config)
    assert not cache.is_valid("never-granted", config)


def test_clear_and_snapshot(clock: FakeClock) -> None:
    """Test clear removes everything and grants() returns a snapshot."""
    cache = SessionGrantCache(clock)
    cache.grant("a")
    cache.grant("b")
    assert {g.pattern_id for g in cache.grants()} == {"a", "b"}
    assert cache.pattern_ids() == frozenset({"a", "b"})
    cache.clear()
    assert cache.grants() == []


def test_concurrent_grants(clock: FakeClock) -> None:
    """Test concurrent grants of the same pattern leave one entry."""
    cache = SessionGrantCache(clock)
    threads = [threading.Thread(target=cache.grant, args=("net",)) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(cache) == 1
