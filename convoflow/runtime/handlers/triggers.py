# Copyright 2025 Ralph Lemke
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

"""Trigger node handlers.

Triggers are entry points. Runs are positioned after them, so executing one
only happens when an edge leads back into it; it is a no-op either way.
"""

import re

from ..graph import Node
from ..result import StepResult
from .base import NodeHandler


class TriggerHandler(NodeHandler):
    """TRIGGER_MESSAGE / TRIGGER_SCHEDULE / TRIGGER_MANUAL."""

    def execute(self) -> StepResult:
        return StepResult.advance(self.next_node())


class MatchType:
    """How a TRIGGER_MESSAGE pattern is compared to inbound text."""

    EXACT = "exact"
    CONTAINS = "contains"
    REGEX = "regex"


def message_matches(node: Node, text: str) -> bool:
    """Check whether inbound text fires a TRIGGER_MESSAGE node.

    Comparison is case-insensitive. An empty pattern matches everything.

    Args:
        node: A TRIGGER_MESSAGE node
        text: The inbound message text

    Returns:
        True if the trigger fires
    """
    pattern = str(node.get("pattern", "keyword", "message", default="") or "")
    match_type = str(node.get("matchType", "match_type", default=MatchType.CONTAINS)).lower()
    if not pattern.strip():
        return True
    body = (text or "").strip()
    if match_type == MatchType.REGEX:
        try:
            return re.search(pattern, body, re.IGNORECASE) is not None
        except re.error:
            return False
    if match_type == MatchType.EXACT:
        return body.lower() == pattern.strip().lower()
    # Comma-separated keywords: any one of them fires the trigger
    keywords = [k.strip().lower() for k in pattern.split(",") if k.strip()]
    lowered = body.lower()
    return any(k in lowered for k in keywords)
