"""
Tool registry and built-in tools.

WHAT THIS FILE DOES:
-------------------
The model asks for tools by name with a JSON argument string. This module:
1. ToolRegistry: stores tool definitions, validates calls, routes them to
   implementations and normalizes every outcome into a ToolResult
2. parse_tool_arguments: turns the COMPLETED argument string into a dict
3. ToolImplementations: read / write / bash / task_output / task_stop
4. list_project_files: the read-only file listing tools get in ToolContext

NORMALIZATION:
-------------
Nothing a tool does escapes execute() as an exception:

    unknown tool             -> ToolResult(success=False, error="Unknown tool: x")
    backgrounding a tool that
      is not backgroundable  -> ToolResult(success=False, error="Tool 'x' cannot run ...")
    missing parameter        -> ToolResult(success=False, error="Missing required parameter: p")
    tool raises              -> ToolResult(success=False, error=str(e))
    tool returns a string    -> ToolResult(success=True, content=...)

Task cancellation (asyncio.CancelledError) is NOT caught; it belongs to
whoever is awaiting the call.

BACKGROUND EXECUTION:
--------------------
Tools marked `backgroundable` may hand their work to the TaskSupervisor in
the ToolContext instead of finishing inline. `bash` does this when called
with run_in_background=true and returns the new task id right away.
execute() only lets run_in_background through for backgroundable tools,
and only when the context carries a supervisor.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from .cancellation import AbortSignal
from .errors import ToolArgumentError
from .process import ProcessRunner
from .schemas import ToolDefinition, ToolParameter, ToolResult
from .tasks import TaskSupervisor

logger = logging.getLogger(__name__)

BACKGROUND_PARAM = "run_in_background"


@dataclass
class ToolContext:
    """Everything a tool may need besides its own arguments."""
    workdir: Path
    abort_signal: Optional[AbortSignal] = None
    task_supervisor: Optional[TaskSupervisor] = None
    project_files: tuple[str, ...] = field(default_factory=tuple)


def parse_tool_arguments(raw: str, tool_name: str = "") -> dict[str, Any]:
    """
    Parse a completed argument string.

    Empty or whitespace-only input means "no arguments".

    Raises:
        ToolArgumentError: If the text is not valid JSON or not an object
    """
    if raw is None or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw, strict=False)
    except json.JSONDecodeError as e:
        raise ToolArgumentError(tool_name, str(e)) from e
    if not isinstance(parsed, dict):
        raise ToolArgumentError(tool_name, f"expected a JSON object, got {type(parsed).__name__}")
    return parsed


# =============================================================================
# SECTION 1: TOOL REGISTRY
# =============================================================================

class ToolRegistry:
    """
    Registry of tools the model can call.

    Example usage:
        registry = ToolRegistry()
        registry.register(read_def, implementations.read)

        result = await registry.execute("read", {"path": "main.py"}, context)
        result.success  # True
    """

    def __init__(self):
        self._tools: dict[str, ToolDefinition] = {}
        self._implementations: dict[str, Callable] = {}

    def register(self, definition: ToolDefinition, implementation: Callable) -> None:
        """
        Register a tool with its implementation.

        Args:
            definition: ToolDefinition describing the tool
            implementation: Async function called as impl(**args, context=context)
        """
        self._tools[definition.name] = definition
        self._implementations[definition.name] = implementation

    def get_tool(self, name: str) -> Optional[ToolDefinition]:
        """Get a tool definition by name."""
        return self._tools.get(name)

    def list_tools(self) -> list[ToolDefinition]:
        """Get all registered tools."""
        return list(self._tools.values())

    def without(self, *names: str) -> "ToolRegistry":
        """Copy of this registry minus the named tools."""
        registry = ToolRegistry()
        for name, definition in self._tools.items():
            if name not in names:
                registry.register(definition, self._implementations[name])
        return registry

    def validate_call(self, name: str, args: dict[str, Any]) -> tuple[bool, Optional[str]]:
        """
        Validate a tool call against its definition.

        Returns:
            (is_valid, error_message) - error_message is None if valid
        """
        tool = self._tools.get(name)
        if not tool:
            return False, f"Unknown tool: {name}"

        for param in tool.parameters:
            if param.required and param.name not in args:
                return False, f"Missing required parameter: {param.name}"

        param_names = {p.name for p in tool.parameters}
        for key in args:
            if key not in param_names:
                return False, f"Unknown parameter: {key}"

        return True, None

    async def execute(self, name: str, args: dict[str, Any], context: ToolContext) -> ToolResult:
        """
        Execute a tool call.

        Args:
            name: Tool name requested by the model
            args: Fully parsed arguments
            context: Current tool context

        Returns:
            ToolResult with success/failure and output
        """
        tool = self._tools.get(name)
        if tool is not None and args.get(BACKGROUND_PARAM):
            if not tool.backgroundable:
                return ToolResult(success=False, error=f"Tool '{name}' cannot run in the background")
            if context.task_supervisor is None:
                return ToolResult(success=False, error="Background execution is not available")

        is_valid, error = self.validate_call(name, args)
        if not is_valid:
            return ToolResult(success=False, error=error)

        impl = self._implementations.get(name)
        try:
            output = await impl(**args, context=context)
        except Exception as e:
            logger.warning("Tool %s failed: %s", name, e)
            return ToolResult(success=False, error=str(e) or type(e).__name__)

        if isinstance(output, ToolResult):
            return output
        return ToolResult(success=True, content="" if output is None else str(output))

    def get_tools_config(self) -> list[dict]:
        """Function declarations for the model, one per tool."""
        return [tool.to_function_schema() for tool in self._tools.values()]


# =============================================================================
# SECTION 2: TOOL IMPLEMENTATIONS
# =============================================================================

class ToolImplementations:
    """
    Built-in tool implementations.

    File operations are sandboxed to the working directory.
    """

    def __init__(self, workdir: Path):
        """
        Args:
            workdir: All file operations are restricted to this directory
        """
        self.workdir = Path(workdir).resolve()

    def _resolve_path(self, path: str) -> Path:
        """
        Resolve a path inside the working directory.

        Raises:
            ValueError: If path attempts to escape the working directory
        """
        candidate = Path(path)
        full_path = (candidate if candidate.is_absolute() else self.workdir / candidate).resolve()
        try:
            full_path.relative_to(self.workdir)
        except ValueError:
            raise ValueError(f"Path '{path}' attempts to escape workspace")
        return full_path

    async def read(
        self,
        path: str,
        offset: int = 0,
        limit: Optional[int] = None,
        context: ToolContext = None
    ) -> str:
        """
        Read a file, optionally a window of its lines.

        Raises:
            FileNotFoundError: If file doesn't exist
        """
        full_path = self._resolve_path(path)
        if not full_path.is_file():
            raise FileNotFoundError(f"File not found: {path}")

        lines = full_path.read_text(encoding="utf-8", errors="replace").splitlines()
        end = None if limit is None else offset + limit
        window = lines[offset:end]
        if not window:
            return "(empty file)" if not lines else f"(no lines from offset {offset})"
        return "\n".join(f"{offset + i + 1:>6}\t{line}" for i, line in enumerate(window))

    async def write(self, path: str, content: str, context: ToolContext = None) -> str:
        full_path = self._resolve_path(path)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_text(content, encoding="utf-8")
        rel_path = full_path.relative_to(self.workdir)
        return f"Successfully wrote {len(content)} characters to {rel_path}"

    async def bash(
        self,
        command: str,
        run_in_background: bool = False,
        timeout: Optional[float] = None,
        context: ToolContext = None
    ) -> ToolResult:
        """
        Run a shell command in the working directory.

        In the foreground the command is killed if the turn is aborted.
        In the background it becomes a supervised task.
        """
        if run_in_background:
            if context is None or context.task_supervisor is None:
                raise ValueError("Background execution is not available")
            task_id = context.task_supervisor.start_shell(command, timeout=timeout)
            return ToolResult(
                success=True,
                content=f"Command started in background with ID: {task_id}. "
                        f"Use task_output to read its output and task_stop to stop it.",
            )

        runner = ProcessRunner()
        signal = context.abort_signal if context else None
        unregister = signal.on_abort(runner.abort) if signal else None
        timer = None
        if timeout and timeout > 0:
            timer = asyncio.get_running_loop().call_later(timeout, runner.abort)
        try:
            result = await runner.run(command, cwd=str(self.workdir))
        finally:
            if unregister:
                unregister()
            if timer:
                timer.cancel()

        output = result.output.strip() or "(no output)"
        if result.aborted:
            reason = "timed out" if signal is None or not signal.aborted else "was aborted"
            return ToolResult(success=False, content=output, error=f"Command {reason}")
        if result.exit_code != 0:
            return ToolResult(
                success=False,
                content=output,
                error=f"Command exited with code {result.exit_code}",
            )
        return ToolResult(success=True, content=output)

    async def task_output(
        self,
        task_id: str,
        filter: Optional[str] = None,
        context: ToolContext = None
    ) -> str:
        supervisor = _require_supervisor(context)
        output = supervisor.get_output(task_id, filter=filter)
        if output is None:
            raise ValueError(f"Task not found: {task_id}")

        sections = [f"Status: {output.status.value}"]
        task = supervisor.get(task_id)
        if task and task.exit_code is not None:
            sections.append(f"Exit code: {task.exit_code}")
        if output.stdout:
            sections.append(f"STDOUT:\n{output.stdout}")
        if output.stderr:
            sections.append(f"STDERR:\n{output.stderr}")
        return "\n\n".join(sections)

    async def task_stop(self, task_id: str, context: ToolContext = None) -> str:
        supervisor = _require_supervisor(context)
        task = supervisor.get(task_id)
        if task is None:
            raise ValueError(f"Task not found: {task_id}")
        if supervisor.stop(task_id):
            return f"Task {task_id} killed"
        return f"Task {task_id} is not running (status: {task.status.value})"


def _require_supervisor(context: Optional[ToolContext]) -> TaskSupervisor:
    if context is None or context.task_supervisor is None:
        raise ValueError("No background task supervisor available")
    return context.task_supervisor


# =============================================================================
# SECTION 3: DEFAULT TOOL SET
# =============================================================================

def create_default_tools(workdir: Path) -> ToolRegistry:
    """
    Create a ToolRegistry with the built-in tools.

    Args:
        workdir: Directory file tools and shell commands operate in

    Returns:
        ToolRegistry with read, write, bash, task_output and task_stop
    """
    registry = ToolRegistry()
    impl = ToolImplementations(workdir)

    registry.register(
        ToolDefinition(
            name="read",
            description="Read a file from the working directory. Lines are numbered from 1.",
            parameters=[
                ToolParameter(name="path", type="string", description="Path relative to the working directory"),
                ToolParameter(name="offset", type="integer", description="First line to read (0-based)",
                              required=False, default=0),
                ToolParameter(name="limit", type="integer", description="Maximum number of lines",
                              required=False),
            ],
        ),
        impl.read,
    )

    registry.register(
        ToolDefinition(
            name="write",
            description="Write content to a file, creating parent directories as needed.",
            parameters=[
                ToolParameter(name="path", type="string", description="Path relative to the working directory"),
                ToolParameter(name="content", type="string", description="Full file content"),
            ],
        ),
        impl.write,
    )

    registry.register(
        ToolDefinition(
            name="bash",
            description=(
                "Run a shell command in the working directory. Set run_in_background "
                "for long-running commands such as dev servers or watchers."
            ),
            parameters=[
                ToolParameter(name="command", type="string", description="Shell command to run"),
                ToolParameter(name="run_in_background", type="boolean",
                              description="Start as a background task and return its id",
                              required=False, default=False),
                ToolParameter(name="timeout", type="number",
                              description="Seconds before the command is killed",
                              required=False),
            ],
            backgroundable=True,
        ),
        impl.bash,
    )

    registry.register(
        ToolDefinition(
            name="task_output",
            description="Read the output and status of a background task.",
            parameters=[
                ToolParameter(name="task_id", type="string", description="Id returned when the task started"),
                ToolParameter(name="filter", type="string",
                              description="Regex; only matching lines are returned",
                              required=False),
            ],
        ),
        impl.task_output,
    )

    registry.register(
        ToolDefinition(
            name="task_stop",
            description="Stop a running background task.",
            parameters=[
                ToolParameter(name="task_id", type="string", description="Id of the task to stop"),
            ],
        ),
        impl.task_stop,
    )

    return registry


# =============================================================================
# SECTION 4: PROJECT FILE LISTING
# =============================================================================

SKIP_DIRS = {".git", ".hg", ".svn", "node_modules", "__pycache__", ".venv", "venv", ".mypy_cache", ".pytest_cache"}
MAX_PROJECT_FILES = 2000


def list_project_files(workdir: Path, limit: int = MAX_PROJECT_FILES) -> tuple[str, ...]:
    """
    List files in the project for ToolContext.project_files.

    Args:
        workdir: Project root
        limit: Stop after this many files

    Returns:
        Sorted relative POSIX paths, skipping VCS, dependency and cache dirs
    """
    root = Path(workdir).resolve()
    if not root.is_dir():
        return ()

    files = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
        base = Path(dirpath)
        for name in sorted(filenames):
            files.append((base / name).relative_to(root).as_posix())
            if len(files) >= limit:
                logger.debug("Project file listing truncated at %d files", limit)
                return tuple(sorted(files))
    return tuple(sorted(files))
