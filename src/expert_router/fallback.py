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

"""Expert fallback chains: which experts to try, in order, for a request."""

from collections.abc import Mapping, Sequence

from .models import EXPERT_IDS, ExpertId, require

FALLBACK_CHAIN: dict[str, tuple[str, ...]] = {
    "strategist": ("researcher", "reviewer"),
    "researcher": ("reviewer", "explorer"),
    "reviewer": ("explorer", "writer"),
    "frontend": ("writer", "explorer"),
    "writer": ("explorer", "reviewer"),
    "explorer": ("writer", "researcher"),
}


def resolve_candidates(
    suggested: ExpertId | None,
    default: ExpertId | None = None,
    chain: Mapping[str, Sequence[str]] = FALLBACK_CHAIN,
) -> list[str]:
    """Return the primary expert followed by its fallbacks, without repeats.

    The primary is the suggested expert, or default when nothing was
    suggested. Returns an empty list when there is neither.
    """
    primary = suggested if suggested is not None else default
    if primary is None:
        return []
    require(primary, EXPERT_IDS, "expert")

    candidates = [primary]
    for expert in chain.get(primary, ()):
        require(expert, EXPERT_IDS, "expert")
        if expert not in candidates:
            candidates.append(expert)
    return candidates
