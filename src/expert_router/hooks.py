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

"""Claude Code hook handlers."""

import json
import logging
import sys
from pathlib import Path
from typing import Any

from .config import RuleStore, get_config_dir
from .detector import KeywordDetector
from .gate import PermissionGate
from .models import (
    UNCLASSIFIED,
    DetectionResult,
    Operation,
    PermissionCheckResult,
    PermissionRequest,
)

logger = logging.getLogger(__name__)

# Minimum confidence before a routing hint is added to the prompt
ROUTING_CONFIDENCE = 0.6

_FILE_WRITE_TOOLS = ("Write", "Edit", "MultiEdit", "NotebookEdit")
_NETWORK_TOOLS = ("WebFetch", "WebSearch")


def _text(value: Any) -> str:
    """Tool-input value as text; missing or non-string values become empty."""
    return value if isinstance(value, str) else ""


def _get_tool_input_content(tool_name: str, tool_input: dict[str, Any]) -> str:
    """Extract content written by a file tool."""
    if tool_name in ("Write", "NotebookEdit"):
        return _text(tool_input.get("content")) or _text(tool_input.get("new_source"))
    if tool_name == "Edit":
        return _text(tool_input.get("new_string"))
    if tool_name == "MultiEdit":
        edits = tool_input.get("edits")
        if not isinstance(edits, list):
            return ""
        return "\n".join(_text(e.get("new_string")) for e in edits if isinstance(e, dict))
    return ""


def _string_inputs(tool_input: dict[str, Any]) -> str:
    return " ".join(v for v in tool_input.values() if isinstance(v, str))


def operation_from_tool_call(tool_name: str, tool_input: dict[str, Any]) -> Operation:
    """Map a Claude Code tool call onto an Operation."""
    if tool_name == "Bash":
        return Operation("shell-execute", _text(tool_input.get("command")), tool_name)
    if tool_name in _FILE_WRITE_TOOLS:
        path = _text(tool_input.get("file_path")) or _text(tool_input.get("notebook_path"))
        content = _get_tool_input_content(tool_name, tool_input)
        # Path last so end-anchored extension patterns see it
        detail = f"{content}\n{path}" if content else path
        return Operation("file-write", detail, tool_name)
    if tool_name == "Read":
        return Operation("file-read", _text(tool_input.get("file_path")), tool_name)
    if tool_name in _NETWORK_TOOLS:
        detail = _text(tool_input.get("url")) or _text(tool_input.get("query"))
        return Operation("network-call", detail, tool_name)
    return Operation("any", _string_inputs(tool_input), tool_name)


def _build_block_response(result: PermissionCheckResult) -> dict[str, Any]:
    """Build a blocking response for PreToolUse."""
    return {
        "hookSpecificOutput": {
            "hookEventName": "PreToolUse",
            "permissionDecision": "deny",
            "permissionDecisionReason": result.reason,
        },
        "continue": False,
        "stopReason": f"Blocked by permission rules: {result.reason}",
    }


def _build_ask_response(result: PermissionCheckResult, request: PermissionRequest) -> dict[str, Any]:
    """Build a response handing the decision to the user."""
    names = ", ".join(request.pattern_names)
    return {
        "hookSpecificOutput": {
            "hookEventName": "PreToolUse",
            "permissionDecision": "ask",
            "permissionDecisionReason": (
                f"{result.risk_level.upper()} risk ({names}): {request.description}"
            ),
        },
        "continue": True,
    }


def handle_pre_tool_use(data: dict[str, Any], project_dir: Path | None = None) -> int:
    """Handle PreToolUse hook event - gate risky tool calls."""
    tool_name = _text(data.get("tool_name"))
    tool_input = data.get("tool_input") or {}
    if not isinstance(tool_input, dict):
        tool_input = {}

    config = RuleStore(get_config_dir(project_dir)).load_permissions()
    gate = PermissionGate(config)
    result = gate.check_permission(operation_from_tool_call(tool_name, tool_input))

    if result.status == "denied":
        json.dump(_build_block_response(result), sys.stdout)
        sys.stderr.write(f"Blocked: {result.reason}\n")
        return 2

    # Unmatched tool calls are left to Claude Code's own permission prompt
    if result.request is not None and result.risk_level != UNCLASSIFIED:
        json.dump(_build_ask_response(result, result.request), sys.stdout)
        return 0

    json.dump({"continue": True}, sys.stdout)
    return 0


def routing_context(result: DetectionResult) -> str:
    """Routing hint injected into the conversation."""
    keywords: list[str] = []
    for matched in result.matched_rules:
        for keyword in matched.matched_keywords:
            if keyword not in keywords:
                keywords.append(keyword)
    return (
        f"Suggested expert: {result.suggested_expert} "
        f"(confidence {result.confidence:.0%}, keywords: {', '.join(keywords)})"
    )


def handle_user_prompt_submit(data: dict[str, Any], project_dir: Path | None = None) -> int:
    """Handle UserPromptSubmit hook event - suggest an expert for the prompt."""
    prompt = data.get("prompt", "")
    if not prompt:
        json.dump({"continue": True}, sys.stdout)
        return 0

    detector = KeywordDetector(RuleStore(get_config_dir(project_dir)).load_keywords())
    result = detector.detect(prompt)
    if not result.detected or result.confidence < ROUTING_CONFIDENCE:
        json.dump({"continue": True}, sys.stdout)
        return 0

    response = {
        "hookSpecificOutput": {
            "hookEventName": "UserPromptSubmit",
            "additionalContext": routing_context(result),
        },
        "continue": True,
    }
    json.dump(response, sys.stdout)
    return 0


def run_hook(project_dir: Path | None = None) -> int:
    """Main hook entry point. Reads JSON from stdin, dispatches to handler."""
    try:
        data = json.load(sys.stdin)
    except json.JSONDecodeError as e:
        sys.stderr.write(f"Invalid JSON input: {e}\n")
        return 1
    if not isinstance(data, dict):
        sys.stderr.write("Invalid JSON input: expected an object\n")
        return 1

    event = data.get("hook_event_name", "")
    logger.debug("Hook event %s", event)

    if event == "PreToolUse":
        return handle_pre_tool_use(data, project_dir)
    if event == "UserPromptSubmit":
        return handle_user_prompt_submit(data, project_dir)

    # Unknown or unsupported event, allow to continue
    json.dump({"continue": True}, sys.stdout)
    return 0
