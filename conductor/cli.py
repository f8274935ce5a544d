#!/usr/bin/env python3
"""
conductor CLI - interactive coding assistant in the terminal.

USAGE:
------
  conductor                          - Interactive session
  conductor "task description"       - Run one request and exit
  conductor --continue               - Resume the latest session for this directory
  conductor --resume SESSION_ID      - Resume a specific session
  conductor --list                   - List saved sessions

INTERACTIVE INPUT:
-----------------
  !git status       - Run a shell command directly (bash mode)
  # use pytest -q   - Save a note to project memory (AGENTS.md)
  /tasks            - Show background tasks
  /stop task_1      - Stop a background task
  /usage            - Token usage so far
  /exit             - Quit

Ctrl+C while a request runs aborts it; at the prompt it exits.
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

from rich.prompt import Prompt

from . import ui
from .config import Config, load_config
from .engine import ConversationEngine
from .errors import ConductorError
from .hooks import HookRunner
from .log import configure_logging
from .memory import is_memory_message
from .providers import get_provider
from .schemas import Message, ToolCallBlock, TurnState
from .session import SessionManager
from .subagents import SubagentRunner, register_subagent_tool
from .tasks import TaskSupervisor
from .tools import create_default_tools, list_project_files


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="conductor",
        description="Interactive coding assistant",
        epilog=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("prompt", nargs="?", help="Run one request and exit")
    parser.add_argument("--config", type=Path, help="Path to config.yaml")
    parser.add_argument("--workdir", type=Path, default=Path.cwd(), help="Project directory")
    parser.add_argument("--resume", metavar="SESSION_ID", help="Resume a saved session")
    parser.add_argument("--continue", dest="continue_latest", action="store_true",
                        help="Resume the latest session for this directory")
    parser.add_argument("--list", action="store_true", help="List saved sessions")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def build_engine(config: Config, workdir: Path, on_messages_change=None) -> ConversationEngine:
    """Wire provider, tools, subagents, hooks, tasks and sessions into an engine."""
    provider = get_provider(config.model, stream=config.engine.stream)
    registry = create_default_tools(workdir)
    register_subagent_tool(
        registry,
        SubagentRunner(provider, registry, token_limit=config.engine.token_limit),
    )
    return ConversationEngine(
        provider=provider,
        registry=registry,
        workdir=workdir,
        session_manager=SessionManager(config.sessions.directory_path),
        task_supervisor=TaskSupervisor(workdir, max_completed=config.tasks.max_completed),
        token_limit=config.engine.token_limit,
        system_prompt=config.engine.system_prompt,
        user_memory_path=config.memory.user_file_path,
        project_memory_file=config.memory.project_file,
        project_files=list_project_files(workdir),
        hooks=HookRunner(config.hooks, workdir) if config.hooks else None,
        on_messages_change=on_messages_change,
    )


class TurnPrinter:
    """Prints each turn's new blocks and keeps the spinner text current."""

    def __init__(self):
        self.status = None

    def on_messages_change(self, messages: list[Message]) -> None:
        if self.status is None or not messages:
            return
        for block in reversed(messages[-1].blocks):
            if isinstance(block, ToolCallBlock) and block.stage == "running":
                self.status.update(ui.tool_status_line(block))
                return

    async def run(self, engine: ConversationEngine, content: str) -> None:
        start = len(engine.messages)
        loop = asyncio.get_running_loop()
        handler_installed = False
        if sys.platform != "win32":
            loop.add_signal_handler(signal.SIGINT, engine.abort)
            handler_installed = True
        try:
            with ui.show_thinking() as status:
                self.status = status
                await engine.send_message(content)
        finally:
            self.status = None
            if handler_installed:
                loop.remove_signal_handler(signal.SIGINT)
        ui.show_message_blocks(engine.messages[start + 1:])
        if engine.state is TurnState.ABORTED:
            ui.show_info("Request aborted.")


async def run_command(engine: ConversationEngine, command: str) -> None:
    loop = asyncio.get_running_loop()
    handler_installed = False
    if sys.platform != "win32":
        loop.add_signal_handler(signal.SIGINT, engine.abort_command)
        handler_installed = True
    try:
        await engine.run_command(command)
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)
    ui.show_message_blocks(engine.messages[-1:])


async def interactive(engine: ConversationEngine, printer: TurnPrinter) -> None:
    ui.show_welcome(str(engine.workdir), engine.session_id)
    while True:
        try:
            line = (await asyncio.to_thread(Prompt.ask, "[bold green]>[/bold green]")).strip()
        except (EOFError, KeyboardInterrupt):
            return
        if not line:
            continue

        try:
            if line in ("/exit", "/quit"):
                return
            elif line == "/tasks":
                ui.show_tasks(engine.task_supervisor.list())
            elif line.startswith("/stop "):
                task_id = line.split(maxsplit=1)[1]
                if engine.task_supervisor.stop(task_id):
                    ui.show_success(f"Stopped {task_id}")
                else:
                    ui.show_error(f"{task_id} is not running")
            elif line == "/usage":
                ui.console.print(engine.usage.format_summary())
            elif line.startswith("!"):
                await run_command(engine, line[1:].strip())
            elif is_memory_message(line):
                path = engine.remember(line)
                ui.show_success(f"Saved to {path}")
            else:
                await printer.run(engine, line)
        except ConductorError as e:
            ui.show_error(str(e))


async def async_main(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    configure_logging("DEBUG" if args.verbose else config.logging.level, config.logging.file)

    if args.list:
        ui.show_sessions_list(SessionManager(config.sessions.directory_path).list_all())
        return 0

    workdir = args.workdir.resolve()
    printer = TurnPrinter()
    try:
        engine = build_engine(config, workdir, on_messages_change=printer.on_messages_change)
    except ValueError as e:
        ui.show_error(str(e))
        return 1

    engine.session_manager.cleanup_old(config.sessions.max_age_days)

    resume_id: Optional[str] = args.resume
    if args.continue_latest:
        resume_id = engine.session_manager.latest(str(workdir))
    if resume_id:
        try:
            engine.restore_session(resume_id)
            ui.show_info(f"Resumed session {resume_id}")
        except (FileNotFoundError, ValueError) as e:
            ui.show_error(str(e))
            return 1

    try:
        if args.prompt:
            await printer.run(engine, args.prompt)
        else:
            await interactive(engine, printer)
    finally:
        engine.shutdown()
    return 0


def main() -> None:
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args()

    try:
        exit_code = asyncio.run(async_main(args))
        sys.exit(exit_code)
    except KeyboardInterrupt:
        ui.console.print("\n")
        sys.exit(130)


if __name__ == "__main__":
    main()
