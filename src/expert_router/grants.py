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

"""In-memory, time-bounded record of patterns approved during a session."""

import threading
import time
from collections.abc import Callable

from .models import PermissionConfig, SessionGrant, effective_timeout


class SessionGrantCache:
    """Maps pattern ids to the time they were approved.

    All access goes through one lock so concurrent approvals of the same
    pattern cannot lose an update. Grants live only as long as the process.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._grants: dict[str, float] = {}

    def grant(self, pattern_id: str) -> SessionGrant:
        """Record (or refresh) a grant for pattern_id."""
        with self._lock:
            granted_at = self._clock()
            self._grants[pattern_id] = granted_at
        return SessionGrant(pattern_id=pattern_id, granted_at=granted_at)

    def revoke(self, pattern_id: str) -> None:
        with self._lock:
            self._grants.pop(pattern_id, None)

    def clear(self) -> None:
        with self._lock:
            self._grants.clear()

    def is_valid(self, pattern_id: str, config: PermissionConfig) -> bool:
        """True while now - granted_at < effective timeout of the pattern.

        Expired grants and grants for patterns no longer in config are
        dropped.
        """
        pattern = config.get_pattern(pattern_id)
        with self._lock:
            granted_at = self._grants.get(pattern_id)
            if granted_at is None:
                return False
            if pattern is None:
                del self._grants[pattern_id]
                return False
            if self._clock() - granted_at < effective_timeout(pattern, config):
                return True
            del self._grants[pattern_id]
            return False

    def grants(self) -> list[SessionGrant]:
        with self._lock:
            return [SessionGrant(pid, at) for pid, at in self._grants.items()]

    def pattern_ids(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._grants)

    def __contains__(self, pattern_id: object) -> bool:
        with self._lock:
            return pattern_id in self._grants

    def __len__(self) -> int:
        with self._lock:
            return len(self._grants)
