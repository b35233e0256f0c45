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

"""Tests for Claude Code hook handlers."""

import io
import json
import sys
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest

from expert_router.hooks import (
    handle_pre_tool_use,
    handle_user_prompt_submit,
    operation_from_tool_call,
    run_hook,
)


@pytest.fixture
def project_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Empty project directory using the built-in tables."""
    monkeypatch.delenv("LLM_ROUTER_CONFIG_DIR", raising=False)
    return tmp_path


def write_permissions(project_dir: Path, text: str) -> None:
    config_dir = project_dir / ".llm-router"
    config_dir.mkdir(exist_ok=True)
    (config_dir / "permissions.yaml").write_text(text)


def capture_output(func: Any, *args: Any, **kwargs: Any) -> tuple[int, dict[str, Any]]:
    """Capture stdout from a hook function and parse as JSON."""
    stdout = io.StringIO()
    with patch.object(sys, "stdout", stdout), patch.object(sys, "stderr", io.StringIO()):
        result = func(*args, **kwargs)
    stdout.seek(0)
    output = json.load(stdout)
    return result, output


def bash(command: str) -> dict[str, Any]:
    return {"hook_event_name": "PreToolUse", "tool_name": "Bash", "tool_input": {"command": command}}


def test_pre_tool_use_asks_for_critical_command(project_dir: Path) -> None:
    """Test a recursive delete is handed to the user for confirmation."""
    code, output = capture_output(handle_pre_tool_use, bash("rm -rf build/"), project_dir)
    assert code == 0
    assert output["continue"] is True
    hook_output = output["hookSpecificOutput"]
    assert hook_output["permissionDecision"] == "ask"
    assert "CRITICAL" in hook_output["permissionDecisionReason"]
    assert "File Deletion" in hook_output["permissionDecisionReason"]


def test_pre_tool_use_denies_by_rule(project_dir: Path) -> None:
    """Test a deny override rule blocks the tool call."""
    write_permissions(
        project_dir,
        """
rules:
  - id: no-force-push
    name: No force push
    action: deny
    pattern_id: default_2_git_force_push
""",
    )
    code, output = capture_output(handle_pre_tool_use, bash("git push --force"), project_dir)
    assert code == 2
    assert output["continue"] is False
    assert output["hookSpecificOutput"]["permissionDecision"] == "deny"
    assert "Git Force Push" in output["hookSpecificOutput"]["permissionDecisionReason"]


def test_pre_tool_use_allows_unmatched_call(project_dir: Path) -> None:
    """Test tool calls matching no risk pattern continue."""
    data = {
        "hook_event_name": "PreToolUse",
        "tool_name": "Read",
        "tool_input": {"file_path": "src/main.c"},
    }
    code, output = capture_output(handle_pre_tool_use, data, project_dir)
    assert code == 0
    assert output == {"continue": True}


def test_pre_tool_use_allows_low_risk_write(project_dir: Path) -> None:
    """Test low risk writes are allowed by default."""
    data = {
        "hook_event_name": "PreToolUse",
        "tool_name": "Write",
        "tool_input": {"file_path": "src/app.py", "content": "print('hi')\n"},
    }
    code, output = capture_output(handle_pre_tool_use, data, project_dir)
    assert code == 0
    assert output == {"continue": True}


def test_pre_tool_use_asks_for_env_file(project_dir: Path) -> None:
    """Test writing an env file needs confirmation."""
    data = {
        "hook_event_name": "PreToolUse",
        "tool_name": "Write",
        "tool_input": {"file_path": ".env", "content": "DEBUG=1"},
    }
    code, output = capture_output(handle_pre_tool_use, data, project_dir)
    assert code == 0
    assert output["hookSpecificOutput"]["permissionDecision"] == "ask"
    assert "HIGH" in output["hookSpecificOutput"]["permissionDecisionReason"]


def test_pre_tool_use_disabled_system(project_dir: Path) -> None:
    """Test a disabled permission system lets everything through."""
    write_permissions(project_dir, "enabled: false\n")
    code, output = capture_output(handle_pre_tool_use, bash("rm -rf /"), project_dir)
    assert code == 0
    assert output == {"continue": True}


def test_operation_mapping() -> None:
    """Test tool calls map onto operation categories."""
    assert operation_from_tool_call("Bash", {"command": "ls"}).category == "shell-execute"
    assert operation_from_tool_call("Read", {"file_path": "a.txt"}).detail == "a.txt"

    fetch = operation_from_tool_call("WebFetch", {"url": "https://x.io", "prompt": "p"})
    assert (fetch.category, fetch.detail) == ("network-call", "https://x.io")

    edit = operation_from_tool_call(
        "MultiEdit",
        {"file_path": "a.py", "edits": [{"new_string": "one"}, {"new_string": "two"}]},
    )
    assert edit.category == "file-write"
    assert edit.detail == "one\ntwo\na.py"
    assert edit.tool_name == "MultiEdit"

    other = operation_from_tool_call("Grep", {"pattern": "password", "limit": 3})
    assert (other.category, other.detail) == ("any", "password")


def test_user_prompt_suggests_expert(project_dir: Path) -> None:
    """Test UserPromptSubmit adds a routing hint."""
    data = {"hook_event_name": "UserPromptSubmit", "prompt": "please do a security review"}
    code, output = capture_output(handle_user_prompt_submit, data, project_dir)
    assert code == 0
    assert output["continue"] is True
    context = output["hookSpecificOutput"]["additionalContext"]
    assert "reviewer" in context
    assert "security" in context


def test_user_prompt_without_keywords(project_dir: Path) -> None:
    """Test UserPromptSubmit passes plain prompts through."""
    data = {"hook_event_name": "UserPromptSubmit", "prompt": "hello"}
    code, output = capture_output(handle_user_prompt_submit, data, project_dir)
    assert code == 0
    assert output == {"continue": True}


def test_run_hook_dispatches_pre_tool_use(project_dir: Path) -> None:
    """Test run_hook dispatches to PreToolUse handler."""
    stdin = io.StringIO(json.dumps(bash("ls")))
    stdout = io.StringIO()
    with patch.object(sys, "stdin", stdin), patch.object(sys, "stdout", stdout):
        code = run_hook(project_dir)
    assert code == 0


def test_run_hook_unknown_event(project_dir: Path) -> None:
    """Test run_hook handles unknown events gracefully."""
    data = {"hook_event_name": "UnknownEvent"}
    stdin = io.StringIO(json.dumps(data))
    stdout = io.StringIO()
    with patch.object(sys, "stdin", stdin), patch.object(sys, "stdout", stdout):
        code = run_hook(project_dir)
    assert code == 0
    stdout.seek(0)
    output = json.load(stdout)
    assert output["continue"] is True


def test_run_hook_invalid_json(project_dir: Path) -> None:
    """Test run_hook handles invalid JSON input."""
    stdin = io.StringIO("not json")
    stderr = io.StringIO()
    with patch.object(sys, "stdin", stdin), patch.object(sys, "stderr", stderr):
        code = run_hook(project_dir)
    assert code == 1


def test_run_hook_null_tool_inputs(project_dir: Path) -> None:
    """Test null or non-string tool inputs are treated as empty text."""
    data = {"hook_event_name": "PreToolUse", "tool_name": "Bash", "tool_input": {"command": None}}
    stdin = io.StringIO(json.dumps(data))
    stdout = io.StringIO()
    with patch.object(sys, "stdin", stdin), patch.object(sys, "stdout", stdout):
        code = run_hook(project_dir)
    assert code == 0
    stdout.seek(0)
    assert json.load(stdout) == {"continue": True}

    write = operation_from_tool_call("Write", {"file_path": 42, "content": None})
    assert write.detail == ""
    edit = operation_from_tool_call(
        "MultiEdit", {"file_path": "a.py", "edits": [{"new_string": None}]}
    )
    assert edit.detail == "a.py"
    fetch = operation_from_tool_call("WebFetch", {"url": ["x"], "query": "docs"})
    assert fetch.detail == "docs"


def test_pre_tool_use_denies_by_tool_rule(project_dir: Path) -> None:
    """Test an override rule can target a tool name and a risk level."""
    write_permissions(
        project_dir,
        """
patterns:
  - id: fetch
    name: Web Fetch
    risk_level: medium
    category: network-call
    tool_patterns: ["^WebFetch$"]
rules:
  - id: no-fetch
    name: No fetching
    action: deny
    risk_levels: [medium]
    tool_patterns: ["^Web"]
""",
    )
    data = {
        "hook_event_name": "PreToolUse",
        "tool_name": "WebFetch",
        "tool_input": {"url": "https://example.com"},
    }
    code, output = capture_output(handle_pre_tool_use, data, project_dir)
    assert code == 2
    assert "Web Fetch" in output["hookSpecificOutput"]["permissionDecisionReason"]
