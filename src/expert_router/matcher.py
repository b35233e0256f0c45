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

"""Keyword matching shared by routing rules and risk patterns."""

import logging
import re
from collections.abc import Sequence

from .models import MATCH_TYPES, require

logger = logging.getLogger(__name__)


class KeywordMatcher:
    """Matches text against keyword lists under one of the match types.

    Compiled regular expressions are cached per (source, flags). A source
    that fails to compile is cached as invalid and never matches.
    """

    def __init__(self) -> None:
        self._compiled: dict[tuple[str, int], re.Pattern[str] | None] = {}

    def _get_pattern(self, source: str, case_sensitive: bool) -> re.Pattern[str] | None:
        """Get compiled regex for a pattern source, None if it is invalid."""
        flags = 0 if case_sensitive else re.IGNORECASE
        key = (source, flags)
        if key not in self._compiled:
            try:
                self._compiled[key] = re.compile(source, flags)
            except re.error as e:
                logger.warning("Invalid regex pattern %r: %s", source, e)
                self._compiled[key] = None
        return self._compiled[key]

    def is_valid_regex(self, source: str) -> bool:
        return self._get_pattern(source, True) is not None

    def match(
        self,
        text: str,
        keywords: Sequence[str],
        match_type: str,
        case_sensitive: bool = False,
    ) -> list[str]:
        """Return the keywords that hit text, in keyword order.

        For regex only the first keyword is used as the pattern source.
        """
        require(match_type, MATCH_TYPES, "match type")
        if not text or not keywords:
            return []

        if match_type == "regex":
            pattern = self._get_pattern(keywords[0], case_sensitive)
            if pattern is not None and pattern.search(text):
                return [keywords[0]]
            return []

        subject = text if case_sensitive else text.lower()
        matched: list[str] = []
        for keyword in keywords:
            needle = keyword if case_sensitive else keyword.lower()
            if _match_single(subject, needle, match_type):
                matched.append(keyword)
        return matched


def _match_single(text: str, keyword: str, match_type: str) -> bool:
    if not keyword:
        return False
    if match_type == "exact":
        return text == keyword
    if match_type == "startsWith":
        return text.startswith(keyword)
    if match_type == "endsWith":
        return text.endswith(keyword)
    return keyword in text
