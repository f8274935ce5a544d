"""
Tests for lifecycle hooks.

Test list:
1. test_parse_hooks - Config section to HookConfig list, bad events rejected
2. test_matcher - Tool name matching per event
3. test_run_sequence - Input JSON, exit codes, stop at first failure
4. test_timeout - A slow hook is killed and reported as timed out
5. test_abort_skips_hooks - No hook starts once the turn is aborted
6. test_hooks_in_config_file - hooks and engine.stream load and save
"""

import json
import shutil
import tempfile
import time
from pathlib import Path

import pytest

from .cancellation import AbortSignal
from .config import load_config_from_file, save_config
from .hooks import (
    POST_TOOL_USE,
    PRE_TOOL_USE,
    STOP,
    HookConfig,
    HookRunner,
    first_blocking,
    parse_hooks,
)
from .process import SIGNAL_EXIT_CODE


@pytest.fixture
def temp_workspace():
    """Create a temporary workspace directory."""
    workspace = tempfile.mkdtemp(prefix="conductor_test_")
    yield Path(workspace).resolve()
    shutil.rmtree(workspace, ignore_errors=True)


# =============================================================================
# TEST 1: Parsing
# =============================================================================

def test_parse_hooks():
    """
    Test 1: Config section to HookConfig list, bad events rejected.

    Verifies:
    - Entries keep their event, matcher and timeout
    - Unknown events and entries without a command raise ValueError
    """
    hooks = parse_hooks({
        "PreToolUse": [{"matcher": "bash", "command": "./guard.sh", "timeout": 5}],
        "Stop": [{"command": "pytest -q"}],
    })

    assert [(h.event, h.command) for h in hooks] == [
        ("PreToolUse", "./guard.sh"),
        ("Stop", "pytest -q"),
    ]
    assert hooks[0].matcher == "bash"
    assert hooks[0].timeout == 5.0
    assert hooks[1].matcher is None
    assert parse_hooks(None) == []

    with pytest.raises(ValueError, match="Invalid hook event"):
        parse_hooks({"BeforeEverything": [{"command": "true"}]})
    with pytest.raises(ValueError, match="missing 'command'"):
        parse_hooks({"Stop": [{"timeout": 3}]})

    print("✓ Test 1 passed: Hooks parsed")


# =============================================================================
# TEST 2: Matching
# =============================================================================

def test_matcher(temp_workspace):
    """
    Test 2: Tool name matching per event.

    Verifies:
    - A regex matcher must match the whole tool name
    - No matcher or "*" matches every tool
    - Stop hooks ignore the matcher
    """
    edit_hook = HookConfig(event=PRE_TOOL_USE, command="true", matcher="write|edit")
    assert edit_hook.applies_to("write")
    assert not edit_hook.applies_to("write_many")
    assert not edit_hook.applies_to(None)

    assert HookConfig(event=PRE_TOOL_USE, command="true").applies_to("bash")
    assert HookConfig(event=PRE_TOOL_USE, command="true", matcher="*").applies_to("bash")
    assert HookConfig(event=STOP, command="true", matcher="bash").applies_to(None)

    runner = HookRunner([edit_hook], temp_workspace)
    assert runner.has_hooks(PRE_TOOL_USE, "edit")
    assert not runner.has_hooks(PRE_TOOL_USE, "read")
    assert not runner.has_hooks(POST_TOOL_USE, "edit")

    print("✓ Test 2 passed: Matchers work")


# =============================================================================
# TEST 3: Running hooks
# =============================================================================

@pytest.mark.asyncio
async def test_run_sequence(temp_workspace):
    """
    Test 3: Input JSON, exit codes, stop at first failure.

    Verifies:
    - Hooks run in the working directory with the event JSON and project dir
    - Exit 2 is reported as blocking with stderr as the message
    - Hooks after a non-zero exit do not run
    """
    runner = HookRunner([
        HookConfig(event=PRE_TOOL_USE, command='printf "%s" "$CONDUCTOR_HOOK_INPUT" > input.json'),
        HookConfig(event=PRE_TOOL_USE, command='printf "%s" "$CONDUCTOR_PROJECT_DIR" > project_dir.txt'),
        HookConfig(event=PRE_TOOL_USE, command="echo 'rm is not allowed' >&2; exit 2"),
        HookConfig(event=PRE_TOOL_USE, command="touch never_ran"),
    ], temp_workspace)

    results = await runner.run(
        PRE_TOOL_USE, "session-1", tool_name="bash", tool_input={"command": "rm -rf build"}
    )

    assert [r.exit_code for r in results] == [0, 0, 2]
    blocked = first_blocking(results)
    assert blocked is not None
    assert blocked.message == "rm is not allowed"
    assert not (temp_workspace / "never_ran").exists()

    payload = json.loads((temp_workspace / "input.json").read_text())
    assert payload == {
        "session_id": "session-1",
        "cwd": str(temp_workspace),
        "hook_event_name": "PreToolUse",
        "tool_name": "bash",
        "tool_input": {"command": "rm -rf build"},
    }
    assert (temp_workspace / "project_dir.txt").read_text() == str(temp_workspace)

    ok = await HookRunner([HookConfig(event=STOP, command="exit 0")], temp_workspace).run(STOP, "s")
    assert first_blocking(ok) is None

    print("✓ Test 3 passed: Hooks run in sequence")


# =============================================================================
# TEST 4: Timeout
# =============================================================================

@pytest.mark.asyncio
async def test_timeout(temp_workspace):
    """
    Test 4: A slow hook is killed and reported as timed out.

    Verifies:
    - The hook returns soon after its timeout
    - The result is non-blocking with the signal exit code
    """
    runner = HookRunner([HookConfig(event=STOP, command="sleep 10", timeout=0.2)], temp_workspace)

    started = time.monotonic()
    [result] = await runner.run(STOP, "session-1")

    assert time.monotonic() - started < 3
    assert result.timed_out is True
    assert result.exit_code == SIGNAL_EXIT_CODE
    assert result.blocking is False

    print("✓ Test 4 passed: Hook timeout enforced")


# =============================================================================
# TEST 5: Abort
# =============================================================================

@pytest.mark.asyncio
async def test_abort_skips_hooks(temp_workspace):
    """
    Test 5: No hook starts once the turn is aborted.

    Verifies:
    - An already-aborted signal means no results and no side effects
    """
    signal = AbortSignal()
    signal.abort("user pressed Esc")
    runner = HookRunner([HookConfig(event=STOP, command="touch ran")], temp_workspace)

    assert await runner.run(STOP, "session-1", abort_signal=signal) == []
    assert not (temp_workspace / "ran").exists()

    print("✓ Test 5 passed: Aborted turns run no hooks")


# =============================================================================
# TEST 6: Config file
# =============================================================================

def test_hooks_in_config_file(temp_workspace):
    """
    Test 6: hooks and engine.stream load and save.

    Verifies:
    - The hooks section becomes HookConfig entries
    - engine.stream defaults to true and can be turned off
    - save_config writes both back in the same shape
    """
    path = temp_workspace / "conductor.yaml"
    path.write_text(
        "engine:\n"
        "  stream: false\n"
        "hooks:\n"
        "  PostToolUse:\n"
        "    - matcher: write\n"
        "      command: ruff check .\n"
    )

    config = load_config_from_file(path)
    assert config.engine.stream is False
    assert [(h.event, h.matcher, h.command) for h in config.hooks] == [
        ("PostToolUse", "write", "ruff check ."),
    ]

    saved = temp_workspace / "saved.yaml"
    save_config(config, saved)
    reloaded = load_config_from_file(saved)
    assert reloaded.engine.stream is False
    assert reloaded.hooks == config.hooks

    path.write_text("engine:\n  token_limit: 1000\n")
    assert load_config_from_file(path).engine.stream is True

    print("✓ Test 6 passed: Hook config round trip")
