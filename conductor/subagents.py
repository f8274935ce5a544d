"""
Subagent definitions and delegation for conductor.

A subagent is a child ConversationEngine with its own system prompt,
sharing the parent's provider, working directory and task supervisor.
The model reaches it through the `task` tool:

    task(description="audit tests", prompt="...", run_in_background=true)

Foreground: the parent turn waits for the child's final answer, and
aborting the parent aborts the child.
Background: the child becomes a `subagent` task in the TaskSupervisor;
task_stop aborts it and task_output shows its answer once it finishes.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from .engine import ConversationEngine
from .messages import last_assistant_text
from .process import SIGNAL_EXIT_CODE
from .providers import ModelProvider
from .schemas import ErrorBlock, TaskKind, TaskStatus, ToolDefinition, ToolParameter, ToolResult, TurnState
from .tasks import TaskSupervisor
from .tools import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

TASK_TOOL_NAME = "task"


@dataclass
class SubagentConfig:
    """Represents one kind of subagent the model can delegate to."""
    name: str
    description: str
    system_prompt: str
    tools: Optional[list[str]] = None  # None = every parent tool except `task`

    def get_system_prompt(self, workdir: Path) -> str:
        return f"""{self.system_prompt}

You are working in {workdir} on a task delegated by another assistant.
Remember:
- Work autonomously; nobody will answer follow-up questions
- Finish with a concise report of what you found or changed
"""


DEFAULT_SUBAGENTS = [
    SubagentConfig(
        name="general-purpose",
        description="General agent for multi-step research and coding tasks.",
        system_prompt="""You are a capable software engineer handling a self-contained task.

Your approach:
- Read before you write; confirm assumptions against the code
- Prefer small, verifiable steps
- Run the relevant commands to check your work""",
    ),
    SubagentConfig(
        name="explorer",
        description="Read-only agent for finding code and answering questions about it.",
        system_prompt="""You are a code explorer. You answer questions about a codebase.

Your approach:
- Locate the relevant files and read them
- Quote file paths and line numbers in your answer
- Never modify files""",
        tools=["read", "bash"],
    ),
]


class SubagentRegistry:
    """Manages the collection of available subagents."""

    def __init__(self, custom_file: Optional[Path] = None):
        self.subagents: dict[str, SubagentConfig] = {}
        for config in DEFAULT_SUBAGENTS:
            self.subagents[config.name] = config
        if custom_file and Path(custom_file).exists():
            self._load_custom(Path(custom_file))

    def _load_custom(self, filepath: Path) -> None:
        """Load custom subagents from a YAML file."""
        with open(filepath) as f:
            data = yaml.safe_load(f) or {}

        for entry in data.get("subagents", []):
            config = SubagentConfig(
                name=entry["name"],
                description=entry.get("description", ""),
                system_prompt=entry["system_prompt"],
                tools=entry.get("tools"),
            )
            self.subagents[config.name] = config

    def get(self, name: str) -> Optional[SubagentConfig]:
        return self.subagents.get(name)

    def list(self) -> list[SubagentConfig]:
        return list(self.subagents.values())


class SubagentRunner:
    """Builds child engines and runs delegated prompts."""

    def __init__(
        self,
        provider: ModelProvider,
        registry: ToolRegistry,
        subagents: Optional[SubagentRegistry] = None,
        token_limit: int = 64000,
    ):
        self.provider = provider
        self.registry = registry
        self.subagents = subagents or SubagentRegistry()
        self.token_limit = token_limit
        self._background: set[asyncio.Task] = set()

    def _child_registry(self, config: SubagentConfig) -> ToolRegistry:
        registry = self.registry.without(TASK_TOOL_NAME)
        if config.tools is None:
            return registry
        excluded = [t.name for t in registry.list_tools() if t.name not in config.tools]
        return registry.without(*excluded)

    def create_engine(self, config: SubagentConfig, context: ToolContext) -> ConversationEngine:
        return ConversationEngine(
            provider=self.provider,
            registry=self._child_registry(config),
            workdir=context.workdir,
            session_manager=None,
            task_supervisor=context.task_supervisor,
            token_limit=self.token_limit,
            system_prompt=config.get_system_prompt(context.workdir),
            project_files=context.project_files,
        )

    async def run_task(
        self,
        description: str,
        prompt: str,
        subagent_type: str = "general-purpose",
        run_in_background: bool = False,
        context: ToolContext = None
    ) -> ToolResult:
        """Implementation of the `task` tool."""
        config = self.subagents.get(subagent_type)
        if config is None:
            available = ", ".join(c.name for c in self.subagents.list())
            raise ValueError(f"Unknown subagent type: '{subagent_type}'. Available: {available}")

        logger.info("Delegating %r to the %s subagent", description, config.name)
        child = self.create_engine(config, context)

        if run_in_background:
            supervisor = context.task_supervisor
            if supervisor is None:
                raise ValueError("Background execution is not available")
            task_id = supervisor.create(TaskKind.SUBAGENT, description, cancel=child.abort)
            worker = asyncio.get_running_loop().create_task(
                self._run_background(child, task_id, prompt, supervisor)
            )
            self._background.add(worker)
            worker.add_done_callback(self._background.discard)
            return ToolResult(
                success=True,
                content=f"Subagent started in background with ID: {task_id}. "
                        f"Use task_output to read its report.",
            )

        unregister = context.abort_signal.on_abort(child.abort) if context.abort_signal else None
        try:
            await child.send_message(prompt)
        finally:
            if unregister:
                unregister()

        report = last_assistant_text(child.messages)
        if child.state is TurnState.ABORTED:
            return ToolResult(success=False, content=report or None, error="Subagent was aborted")
        error = _last_error(child.messages)
        if error and not report:
            return ToolResult(success=False, error=error)
        return ToolResult(success=True, content=report or "(subagent returned no text)")

    async def _run_background(
        self,
        child: ConversationEngine,
        task_id: str,
        prompt: str,
        supervisor: TaskSupervisor,
    ) -> None:
        task = supervisor.get(task_id)
        if task is None or task.status is not TaskStatus.RUNNING:
            return
        await child.send_message(prompt)

        report = last_assistant_text(child.messages)
        if report:
            supervisor.append_output(task_id, stdout=report)

        if child.state is TurnState.ABORTED:
            supervisor.finish(task_id, TaskStatus.KILLED, SIGNAL_EXIT_CODE)
            return
        error = _last_error(child.messages)
        if error and not report:
            supervisor.append_output(task_id, stderr=error)
            supervisor.finish(task_id, TaskStatus.FAILED, 1)
            return
        supervisor.finish(task_id, TaskStatus.COMPLETED, 0)


def _last_error(messages) -> Optional[str]:
    for message in reversed(messages):
        for block in reversed(message.blocks):
            if isinstance(block, ErrorBlock):
                return block.content
    return None


def register_subagent_tool(registry: ToolRegistry, runner: SubagentRunner) -> None:
    """Add the `task` delegation tool to a registry."""
    names = ", ".join(f"{c.name} ({c.description})" for c in runner.subagents.list())
    registry.register(
        ToolDefinition(
            name=TASK_TOOL_NAME,
            description=f"Delegate a self-contained task to a subagent. Available subagents: {names}",
            parameters=[
                ToolParameter(name="description", type="string", description="Short (3-5 word) task title"),
                ToolParameter(name="prompt", type="string", description="Full instructions for the subagent"),
                ToolParameter(name="subagent_type", type="string", description="Which subagent to use",
                              required=False, default="general-purpose"),
                ToolParameter(name="run_in_background", type="boolean",
                              description="Run as a background task and return its id",
                              required=False, default=False),
            ],
            backgroundable=True,
        ),
        runner.run_task,
    )
