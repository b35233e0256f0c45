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

"""Tests for expert fallback resolution."""

import pytest

from expert_router.errors import UnknownIdentifierError
from expert_router.fallback import FALLBACK_CHAIN, resolve_candidates
from expert_router.models import EXPERT_IDS


def test_suggested_expert_first() -> None:
    """Test the suggested expert leads its fallbacks."""
    assert resolve_candidates("reviewer") == ["reviewer", "explorer", "writer"]


def test_default_used_without_suggestion() -> None:
    """Test the default expert is used when nothing was suggested."""
    assert resolve_candidates(None, default="strategist") == ["strategist", "researcher", "reviewer"]


def test_nothing_to_resolve() -> None:
    """Test no suggestion and no default gives no candidates."""
    assert resolve_candidates(None) == []


def test_duplicates_removed() -> None:
    """Test a chain looping back to the primary does not repeat it."""
    chain = {"writer": ("writer", "explorer", "explorer")}
    assert resolve_candidates("writer", chain=chain) == ["writer", "explorer"]


def test_every_expert_has_a_chain() -> None:
    """Test the built-in chain covers every expert."""
    assert set(FALLBACK_CHAIN) == set(EXPERT_IDS)
    for expert in EXPERT_IDS:
        candidates = resolve_candidates(expert)
        assert candidates[0] == expert
        assert len(candidates) == len(set(candidates))


def test_unknown_experts_fail() -> None:
    """Test unknown experts fail loudly."""
    with pytest.raises(UnknownIdentifierError):
        resolve_candidates("oracle")
    with pytest.raises(UnknownIdentifierError):
        resolve_candidates("writer", chain={"writer": ("oracle",)})
