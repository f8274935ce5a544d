"""
Tests for the supporting modules: cancellation, messages, memory,
sessions, configuration and usage tracking.

Test list:
1. test_abort_signal - Callbacks, idempotence, late registration
2. test_run_abortable - Results pass through, aborts cancel the work
3. test_message_helpers - Tool blocks, command output, compression split
4. test_combine_memory - The four project/user combinations
5. test_memory_files - Reading and appending memory files
6. test_session_manager - Save, load, list, delete, cleanup
7. test_config - Defaults, YAML loading, saving
8. test_usage_tracker - Totals and per-operation breakdown
"""

import asyncio
import json
import os
import shutil
import tempfile
import time
from datetime import datetime
from pathlib import Path

import pytest

from .cancellation import AbortSignal, run_abortable
from .config import Config, TaskConfig, get_default_config, load_config, save_config
from .errors import AbortedError
from .memory import (
    PROJECT_MEMORY_HEADER,
    add_memory,
    add_user_memory,
    combine_memory,
    get_combined_memory,
    is_memory_message,
)
from .messages import (
    add_assistant_message,
    add_command_output,
    add_compress_block,
    add_user_message,
    complete_command_output,
    finalize_tool_blocks,
    find_tool_block,
    get_messages_to_compress,
    last_assistant_text,
    messages_since_compression,
    update_command_output,
    update_tool_block,
)
from .schemas import Usage
from .session import SessionManager
from .usage import UsageTracker


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def temp_workspace():
    """Create a temporary workspace directory."""
    workspace = tempfile.mkdtemp(prefix="conductor_test_")
    yield Path(workspace)
    shutil.rmtree(workspace, ignore_errors=True)


# =============================================================================
# TEST 1: AbortSignal
# =============================================================================

def test_abort_signal():
    """
    Test 1: Callbacks, idempotence, late registration.

    Verifies:
    - Callbacks run once, on the first abort only
    - A removed callback never runs
    - Registering after the abort runs the callback immediately
    - A failing callback does not stop the others
    - raise_if_aborted raises AbortedError with the reason
    """
    signal = AbortSignal()
    calls = []

    signal.on_abort(lambda: calls.append("first"))
    remove = signal.on_abort(lambda: calls.append("removed"))
    signal.on_abort(lambda: 1 / 0)
    signal.on_abort(lambda: calls.append("after failure"))
    remove()

    signal.raise_if_aborted()
    assert signal.aborted is False

    signal.abort("user pressed Esc")
    signal.abort("second time")

    assert signal.aborted is True
    assert signal.reason == "user pressed Esc"
    assert calls == ["first", "after failure"]

    signal.on_abort(lambda: calls.append("late"))
    assert calls[-1] == "late"

    with pytest.raises(AbortedError, match="user pressed Esc"):
        signal.raise_if_aborted()

    print("✓ Test 1 passed: AbortSignal works")


# =============================================================================
# TEST 2: run_abortable
# =============================================================================

@pytest.mark.asyncio
async def test_run_abortable():
    """
    Test 2: Results pass through, aborts cancel the work.

    Verifies:
    - A coroutine that finishes first returns its value
    - Exceptions from the coroutine propagate unchanged
    - An abort mid-way cancels the coroutine and raises AbortedError
    - An already-aborted signal raises without running the work
    """
    signal = AbortSignal()

    async def quick():
        return 42

    assert await run_abortable(quick(), signal) == 42

    async def broken():
        raise KeyError("missing")

    with pytest.raises(KeyError):
        await run_abortable(broken(), signal)

    cancelled = asyncio.Event()

    async def slow():
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    asyncio.get_running_loop().call_later(0.05, signal.abort, "stop")
    with pytest.raises(AbortedError):
        await asyncio.wait_for(run_abortable(slow(), signal), timeout=5)
    assert cancelled.is_set()

    ran = []

    async def should_not_run():
        ran.append(True)

    with pytest.raises(AbortedError):
        await run_abortable(should_not_run(), signal)
    assert ran == []

    print("✓ Test 2 passed: run_abortable works")


# =============================================================================
# TEST 3: Message helpers
# =============================================================================

def test_message_helpers():
    """
    Test 3: Tool blocks, command output, compression split.

    Verifies:
    - update_tool_block creates then updates a block by id
    - finalize_tool_blocks closes only running blocks
    - Command output is updated while running and completed with an exit code
    - get_messages_to_compress keeps the last N text/tool blocks
    - messages_since_compression returns the summary and the tail
    """
    messages = []
    add_user_message(messages, "hi")
    add_assistant_message(messages, "working")
    update_tool_block(messages, "call_1", name="read", arguments='{"pa')
    update_tool_block(messages, "call_1", arguments='{"path": "a"}', args={"path": "a"})
    update_tool_block(messages, "call_2", name="bash", stage="end", streaming=False, success=True)

    block = find_tool_block(messages, "call_1")
    assert block.name == "read"
    assert block.args == {"path": "a"}
    assert len(messages) == 2

    assert finalize_tool_blocks(messages) == 1
    assert block.stage == "end"
    assert block.streaming is False
    assert finalize_tool_blocks(messages) == 0

    add_command_output(messages, "make")
    update_command_output(messages, "make", "building...")
    done = complete_command_output(messages, "make", 2)
    assert done.output == "building..."
    assert done.exit_code == 2
    assert done.is_running is False
    assert complete_command_output(messages, "make", 0) is None

    assert last_assistant_text(messages) == "working"

    short = []
    add_user_message(short, "only one")
    assert get_messages_to_compress(short, keep_last=7) == ([], 0)

    history = []
    for i in range(5):
        add_user_message(history, f"q{i}")
        add_assistant_message(history, f"a{i}")
    to_compress, index = get_messages_to_compress(history, keep_last=3)
    assert index == 7
    assert to_compress == history[:7]

    add_compress_block(history, index, "summary of q0..q3")
    summary, tail = messages_since_compression(history)
    assert summary == "summary of q0..q3"
    assert [m.blocks[0].content for m in tail] == ["a3", "q4", "a4"]

    print("✓ Test 3 passed: Message helpers work")


# =============================================================================
# TEST 4: Memory composition
# =============================================================================

@pytest.mark.parametrize("project, user, expected", [
    ("project rules", "", "project rules"),
    ("", "user prefs", "user prefs"),
    ("project rules", "user prefs", "project rules\n\nuser prefs"),
    ("", "", ""),
    ("  \n", "user prefs", "user prefs"),
])
def test_combine_memory(project, user, expected):
    """
    Test 4: The four project/user combinations.

    Verifies:
    - Either side alone is returned unchanged
    - Both sides are joined by one blank line, project first
    - Whitespace-only memory counts as empty
    """
    assert combine_memory(project, user) == expected

    print("✓ Test 4 passed: Memory combination works")


# =============================================================================
# TEST 5: Memory files
# =============================================================================

def test_memory_files(temp_workspace):
    """
    Test 5: Reading and appending memory files.

    Verifies:
    - Missing files read as empty memory
    - add_memory creates the file with a header and appends "- ..." entries
    - Only '#' messages are memory messages
    - User memory goes to its own file
    """
    user_path = temp_workspace / "home" / "AGENTS.md"
    assert get_combined_memory(temp_workspace, user_path) == ""

    assert is_memory_message("# always run tests")
    assert not is_memory_message("run tests")
    assert add_memory("run tests", temp_workspace) is None

    path = add_memory("# always run tests", temp_workspace)
    add_memory("#  use pathlib ", temp_workspace)
    content = path.read_text()
    assert content.startswith(PROJECT_MEMORY_HEADER)
    assert content.endswith("- always run tests\n- use pathlib\n")

    add_user_memory("# I prefer short answers", user_path)
    assert "- I prefer short answers" in user_path.read_text()

    combined = get_combined_memory(temp_workspace, user_path)
    assert combined.index("always run tests") < combined.index("short answers")
    assert "\n\n" in combined

    print("✓ Test 5 passed: Memory files work")


# =============================================================================
# TEST 6: Sessions
# =============================================================================

def test_session_manager(temp_workspace):
    """
    Test 6: Save, load, list, delete, cleanup.

    Verifies:
    - Saved messages load back with the same blocks
    - started_at survives later saves, token totals are summed
    - Corrupt files raise ValueError on load and are skipped by list_all
    - latest() filters by workdir
    - cleanup_old removes stale files only
    """
    manager = SessionManager(base_path=temp_workspace / "sessions")
    messages = []
    add_user_message(messages, "hello")
    add_assistant_message(messages, "hi there")
    update_tool_block(messages, "call_1", name="read", stage="end", streaming=False, result="ok")

    started = datetime(2025, 1, 1, 12, 0, 0)
    manager.save_session("abc12345", messages, [Usage(total_tokens=10)], "/project", started)
    manager.save_session("abc12345", messages, [Usage(total_tokens=10), Usage(total_tokens=5)], "/project")

    data = manager.load_session("abc12345")
    assert data.id == "abc12345"
    assert data.metadata.started_at == started
    assert data.metadata.total_tokens == 15
    assert data.state.messages[1].blocks[1].result == "ok"
    assert data.state.messages == messages

    assert manager.load_session("missing") is None
    assert manager.exists("abc12345")

    (manager.base_path / "broken.json").write_text("{not json")
    with pytest.raises(ValueError):
        manager.load_session("broken")

    manager.save_session("other001", [], [], "/elsewhere")
    summaries = {s["session_id"]: s for s in manager.list_all()}
    assert set(summaries) == {"abc12345", "other001"}
    assert summaries["abc12345"]["message_count"] == 2
    assert summaries["abc12345"]["total_tokens"] == 15

    assert manager.latest("/project") == "abc12345"
    assert manager.latest("/nowhere") is None

    old = time.time() - 40 * 24 * 60 * 60
    os.utime(manager.base_path / "other001.json", (old, old))
    assert manager.cleanup_old(days=30) == 1
    assert not manager.exists("other001")

    assert manager.delete("abc12345") is True
    assert manager.delete("abc12345") is False

    print("✓ Test 6 passed: Session manager works")


# =============================================================================
# TEST 7: Configuration
# =============================================================================

def test_config(temp_workspace):
    """
    Test 7: Defaults, YAML loading, saving.

    Verifies:
    - Defaults keep every finished task and use OpenAI
    - A partial YAML file overrides only the sections it names
    - An explicit missing path raises FileNotFoundError
    - save_config writes a file load_config reads back
    """
    config = get_default_config()
    assert config.model.provider == "openai"
    assert config.tasks.max_completed is None
    assert config.engine.token_limit == 64000

    path = temp_workspace / "conductor.yaml"
    path.write_text(
        "model:\n"
        "  provider: ollama\n"
        "  model: qwen2.5-coder:14b\n"
        "tasks:\n"
        "  max_completed: 5\n"
        "logging:\n"
        "  level: debug\n"
    )
    loaded = load_config(path)
    assert loaded.model.provider == "ollama"
    assert loaded.model.api_key_env is None
    assert loaded.tasks.max_completed == 5
    assert loaded.logging.level == "DEBUG"
    assert loaded.engine.token_limit == 64000

    with pytest.raises(FileNotFoundError):
        load_config(temp_workspace / "missing.yaml")

    custom = Config(tasks=TaskConfig(max_completed=3))
    custom.engine.token_limit = 32000
    custom.memory.project_file = "NOTES.md"
    out = temp_workspace / "nested" / "saved.yaml"
    save_config(custom, out)

    reloaded = load_config(out)
    assert reloaded.engine.token_limit == 32000
    assert reloaded.memory.project_file == "NOTES.md"
    assert reloaded.tasks.max_completed == 3

    print("✓ Test 7 passed: Configuration works")


# =============================================================================
# TEST 8: Usage tracking
# =============================================================================

def test_usage_tracker():
    """
    Test 8: Totals and per-operation breakdown.

    Verifies:
    - total_tokens sums every record
    - Agent and compress calls are tracked separately, by model
    - format_summary mentions the total
    """
    tracker = UsageTracker()
    assert tracker.last is None

    tracker.add(Usage(prompt_tokens=90, completion_tokens=10, total_tokens=100, model="gpt-4o"))
    tracker.add(Usage(prompt_tokens=40, completion_tokens=10, total_tokens=50, model="gpt-4o"))
    tracker.add(Usage(prompt_tokens=20, completion_tokens=5, total_tokens=25,
                      model="gpt-4o-mini", operation_type="compress"))

    assert tracker.total_tokens == 175
    assert tracker.last.operation_type == "compress"

    breakdown = tracker.get_breakdown()
    assert breakdown["agent"] == {"tokens": 150, "calls": 2, "models": {"gpt-4o": 150}}
    assert breakdown["compress"]["models"] == {"gpt-4o-mini": 25}
    assert "TOTAL: 175 tokens" in tracker.format_summary()

    print("✓ Test 8 passed: Usage tracking works")
