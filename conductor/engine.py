"""
Conversation engine for conductor.

WHAT THIS FILE DOES:
-------------------
Turns one user message into as many model round-trips and tool calls as
it takes to reach a final answer, while the UI watches every step.

HOW A TURN WORKS:
----------------
    send_message("add a test for parse()")
           │
           ▼
    state = SENDING ──► provider.call_agent(history, tools, memory)
           │               │ ToolCallDelta, ToolCallDelta, ...
           │               ▼
           │            STREAMING: tool block args = extract_complete_args(text so far)
           ▼
    EXECUTING_TOOLS: parse each call's full arguments
           ├── parse error  -> error in the tool block + error block
           └── ok           -> PreToolUse hooks -> registry.execute() -> PostToolUse hooks
                               (all calls concurrently)
           │
           ▼
    usage over token_limit? ── yes ──► compress older history
           │
           ▼
    any call executed and not aborted? ── yes ──► next round-trip
           │ no
           ▼
    Stop hooks exit 2? ── yes ──► their stderr as a user message, next round-trip
           │ no
           ▼
    IDLE (or ABORTED) ──► session saved

RULES:
-----
1. One foreground turn at a time. send_message() while busy raises
   TurnInProgressError and touches nothing.
2. abort() fires the turn's AbortSignal. From then on no new work is
   issued, and results or parse errors that arrive late are dropped.
3. Nothing a tool, subprocess, or model call raises escapes the loop.
   Failures become blocks in the timeline.
4. Every terminal transition saves the session. A failed save is logged.
"""

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from .cancellation import AbortSignal, run_abortable
from .errors import AbortedError, ProcessBusyError, ToolArgumentError, TurnInProgressError
from .hooks import POST_TOOL_USE, PRE_TOOL_USE, STOP, HookResult, HookRunner, first_blocking
from .memory import (
    PROJECT_MEMORY_FILE,
    add_memory,
    add_user_memory,
    get_combined_memory,
)
from .messages import (
    add_assistant_message,
    add_command_output,
    add_compress_block,
    add_custom_command_message,
    add_error_block,
    add_user_message,
    complete_command_output,
    finalize_tool_blocks,
    get_messages_to_compress,
    set_assistant_text,
    update_command_output,
    update_tool_block,
)
from .process import ProcessResult, ProcessRunner
from .providers import DEFAULT_SYSTEM_PROMPT, ModelProvider
from .schemas import (
    AgentResponse,
    BackgroundTask,
    Message,
    ToolCall,
    ToolCallDelta,
    ToolResult,
    TurnState,
    Usage,
)
from .session import SessionManager, generate_session_id
from .streaming import extract_complete_args
from .tasks import TaskSupervisor
from .tools import ToolContext, ToolRegistry, parse_tool_arguments
from .usage import UsageTracker

logger = logging.getLogger(__name__)

# Blocks kept verbatim when older history is compressed.
KEEP_LAST_BLOCKS = 7

MessagesListener = Callable[[list[Message]], None]
LoadingListener = Callable[[bool], None]
TasksListener = Callable[[list[BackgroundTask]], None]
UsageListener = Callable[[Usage], None]


class ConversationEngine:
    """
    Owns the message history and runs turns against a model.

    Usage:
        engine = ConversationEngine(
            provider=get_provider(config.model),
            registry=create_default_tools(workdir),
            workdir=workdir,
            session_manager=SessionManager(),
            on_messages_change=render,
        )
        await engine.send_message("What does main.py do?")

        # From a key handler while the turn runs:
        engine.abort()
    """

    def __init__(
        self,
        provider: ModelProvider,
        registry: ToolRegistry,
        workdir: Path,
        session_manager: Optional[SessionManager] = None,
        task_supervisor: Optional[TaskSupervisor] = None,
        session_id: Optional[str] = None,
        messages: Optional[list[Message]] = None,
        token_limit: int = 64000,
        system_prompt: Optional[str] = None,
        user_memory_path: Optional[Path] = None,
        project_memory_file: str = PROJECT_MEMORY_FILE,
        project_files: tuple[str, ...] = (),
        hooks: Optional[HookRunner] = None,
        on_messages_change: Optional[MessagesListener] = None,
        on_loading_change: Optional[LoadingListener] = None,
        on_tasks_change: Optional[TasksListener] = None,
        on_usage_added: Optional[UsageListener] = None,
    ):
        """
        Args:
            provider: Model backend
            registry: Tools the model may call
            workdir: Project directory for tools, commands and memory
            session_manager: Where sessions are saved (None disables saving)
            task_supervisor: Background task table (created if omitted)
            session_id: Id to save under (generated if omitted)
            messages: Initial history, e.g. from a restored session
            token_limit: Compress history once a call reports more tokens
            system_prompt: Base prompt; "{workdir}" is substituted
            user_memory_path: User memory file (defaults to ~/.conductor/AGENTS.md)
            project_memory_file: Project memory file name inside workdir
            project_files: Read-only file metadata handed to tools
            hooks: PreToolUse/PostToolUse/Stop commands (None runs no hooks)
        """
        self.provider = provider
        self.registry = registry
        self.workdir = Path(workdir).resolve()
        self.session_manager = session_manager
        self.session_id = session_id or generate_session_id()
        self.token_limit = token_limit
        self.system_prompt = (system_prompt or DEFAULT_SYSTEM_PROMPT).replace("{workdir}", str(self.workdir))
        self.user_memory_path = user_memory_path
        self.project_memory_file = project_memory_file
        self.project_files = tuple(project_files)
        self.hooks = hooks
        self.usage = UsageTracker()

        self.on_messages_change = on_messages_change
        self.on_loading_change = on_loading_change
        self.on_usage_added = on_usage_added

        if task_supervisor is None:
            task_supervisor = TaskSupervisor(self.workdir, on_tasks_change=on_tasks_change)
        elif on_tasks_change is not None:
            task_supervisor.subscribe(on_tasks_change)
        self.task_supervisor = task_supervisor

        self._messages: list[Message] = list(messages or [])
        self._state = TurnState.IDLE
        self._abort_signal: Optional[AbortSignal] = None
        self._hook_feedback: list[str] = []
        self._started_at = datetime.now()

        self._command_runner = ProcessRunner(on_output_update=self._on_command_output)
        self._active_command: Optional[str] = None

    # =========================================================================
    # Observers
    # =========================================================================

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def is_loading(self) -> bool:
        return self._state.is_busy

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def is_command_running(self) -> bool:
        return self._command_runner.is_running

    # =========================================================================
    # Turns
    # =========================================================================

    async def send_message(self, content: str) -> None:
        """
        Run one turn for a user message.

        Raises:
            TurnInProgressError: If a turn is already running
        """
        self._begin_turn()
        add_user_message(self._messages, content)
        await self._run_turn()

    async def send_custom_command(
        self,
        command_name: str,
        content: str,
        original_input: Optional[str] = None,
    ) -> None:
        """Run one turn for an expanded slash command."""
        self._begin_turn()
        add_custom_command_message(self._messages, command_name, content, original_input)
        await self._run_turn()

    def abort(self, reason: str = "aborted by user") -> bool:
        """
        Abort the current turn.

        Returns:
            True if a turn was running
        """
        signal = self._abort_signal
        if signal is None or signal.aborted or not self._state.is_busy:
            return False
        logger.info("Aborting turn: %s", reason)
        signal.abort(reason)
        return True

    def _begin_turn(self) -> None:
        # No await between the check and the state change.
        if self._state.is_busy:
            raise TurnInProgressError(self._state.value)
        self._abort_signal = AbortSignal()
        self._set_state(TurnState.SENDING)

    async def _run_turn(self) -> None:
        signal = self._abort_signal
        self._notify_messages()
        try:
            await self._turn_loop(signal)
            while not signal.aborted and await self._run_stop_hooks(signal):
                logger.info("Stop hook asked to continue the turn")
                await self._turn_loop(signal)
        except Exception as e:
            logger.exception("Turn failed unexpectedly")
            if not signal.aborted:
                add_error_block(self._messages, f"Unexpected error: {e}")
        finally:
            if signal.aborted and finalize_tool_blocks(self._messages):
                logger.debug("Closed tool blocks interrupted by abort")
            self._notify_messages()
            self._set_state(TurnState.ABORTED if signal.aborted else TurnState.IDLE)
            await self._save_session()

    async def _turn_loop(self, signal: AbortSignal) -> None:
        round_trip = 0
        while not signal.aborted:
            round_trip += 1
            self._set_state(TurnState.SENDING)
            add_assistant_message(self._messages)
            self._notify_messages()

            response = await self._call_model(signal)
            if response is None or signal.aborted:
                return

            if response.usage:
                self._messages[-1].usage = response.usage
                self._record_usage(response.usage)
            if response.content:
                set_assistant_text(self._messages, response.content)
                self._notify_messages()

            executed = False
            if response.tool_calls:
                self._set_state(TurnState.EXECUTING_TOOLS)
                executed = await self._execute_tool_calls(response.tool_calls, signal)

            if response.usage and response.usage.total_tokens > self.token_limit:
                await self._compress(signal)

            if not response.tool_calls:
                logger.info("Turn finished after %d round trip(s)", round_trip)
                return
            if not executed:
                return

    async def _call_model(self, signal: AbortSignal) -> Optional[AgentResponse]:
        """One model round-trip. Returns None if the turn should end."""
        try:
            memory = await asyncio.to_thread(
                get_combined_memory,
                self.workdir,
                self.user_memory_path,
                self.project_memory_file,
            )
            return await run_abortable(
                self.provider.call_agent(
                    messages=list(self._messages),
                    tools=self.registry.get_tools_config(),
                    memory=memory,
                    abort_signal=signal,
                    on_tool_call_update=self._on_tool_call_delta,
                    on_content_update=self._on_content_update,
                    system_prompt=self.system_prompt,
                ),
                signal,
            )
        except AbortedError:
            return None
        except Exception as e:
            if signal.aborted:
                return None
            logger.error("Model call failed: %s", e)
            add_error_block(self._messages, f"Request failed: {e}")
            self._notify_messages()
            return None

    # =========================================================================
    # Streaming callbacks
    # =========================================================================

    def _on_tool_call_delta(self, delta: ToolCallDelta) -> None:
        signal = self._abort_signal
        if signal is None or signal.aborted:
            return
        if self._state is TurnState.SENDING:
            self._set_state(TurnState.STREAMING)

        fields = {
            "name": delta.name,
            "arguments": delta.arguments_so_far,
            "args": extract_complete_args(delta.arguments_so_far),
        }
        if delta.is_complete:
            fields["streaming"] = False
        update_tool_block(self._messages, delta.id, **fields)
        self._notify_messages()

    def _on_content_update(self, content: str) -> None:
        signal = self._abort_signal
        if signal is None or signal.aborted:
            return
        if self._state is TurnState.SENDING:
            self._set_state(TurnState.STREAMING)
        set_assistant_text(self._messages, content)
        self._notify_messages()

    # =========================================================================
    # Tool execution
    # =========================================================================

    async def _execute_tool_calls(self, calls: list[ToolCall], signal: AbortSignal) -> bool:
        """Run every call concurrently. Returns True if any tool executed."""
        results = await asyncio.gather(*(self._execute_tool_call(call, signal) for call in calls))
        self._flush_hook_feedback(signal)
        return any(results)

    async def _execute_tool_call(self, call: ToolCall, signal: AbortSignal) -> bool:
        if signal.aborted:
            return False

        try:
            args = parse_tool_arguments(call.arguments, call.name)
        except ToolArgumentError as e:
            if signal.aborted:
                return False
            logger.warning("%s", e)
            update_tool_block(
                self._messages,
                call.id,
                name=call.name,
                arguments=call.arguments,
                stage="end",
                streaming=False,
                success=False,
                error=str(e),
            )
            add_error_block(self._messages, f"Tool '{call.name}' was not run: {e}")
            self._notify_messages()
            return False

        update_tool_block(
            self._messages,
            call.id,
            name=call.name,
            arguments=call.arguments,
            args=args,
            streaming=False,
        )
        self._notify_messages()

        allowed = await self._run_pre_tool_hooks(call, args, signal)
        if signal.aborted:
            return False
        if not allowed:
            return True

        context = ToolContext(
            workdir=self.workdir,
            abort_signal=signal,
            task_supervisor=self.task_supervisor,
            project_files=self.project_files,
        )
        try:
            result = await run_abortable(self.registry.execute(call.name, args, context), signal)
        except AbortedError:
            return False

        if signal.aborted:
            return False

        update_tool_block(
            self._messages,
            call.id,
            stage="end",
            success=result.success,
            result=result.content,
            error=result.error,
        )
        self._notify_messages()
        await self._run_post_tool_hooks(call, args, result, signal)
        return True

    # =========================================================================
    # Hooks
    # =========================================================================

    async def _run_pre_tool_hooks(self, call: ToolCall, args: dict, signal: AbortSignal) -> bool:
        """Returns False if a hook blocked the call (its block is then closed)."""
        if self.hooks is None or not self.hooks.has_hooks(PRE_TOOL_USE, call.name):
            return True
        results = await self.hooks.run(
            PRE_TOOL_USE,
            self.session_id,
            tool_name=call.name,
            tool_input=args,
            abort_signal=signal,
        )
        if signal.aborted:
            return False
        blocked = first_blocking(results)
        if blocked is not None:
            logger.info("Tool %s blocked by PreToolUse hook %r", call.name, blocked.command)
            update_tool_block(
                self._messages,
                call.id,
                stage="end",
                success=False,
                result=blocked.message,
                error="Hook blocked tool execution",
            )
            self._notify_messages()
            return False
        self._report_hook_failures(PRE_TOOL_USE, results)
        return True

    async def _run_post_tool_hooks(
        self, call: ToolCall, args: dict, result: ToolResult, signal: AbortSignal
    ) -> None:
        if self.hooks is None or not self.hooks.has_hooks(POST_TOOL_USE, call.name):
            return
        results = await self.hooks.run(
            POST_TOOL_USE,
            self.session_id,
            tool_name=call.name,
            tool_input=args,
            tool_response=result.model_dump(),
            abort_signal=signal,
        )
        if signal.aborted:
            return
        blocked = first_blocking(results)
        if blocked is not None:
            self._hook_feedback.append(blocked.message)
        else:
            self._report_hook_failures(POST_TOOL_USE, results)

    async def _run_stop_hooks(self, signal: AbortSignal) -> bool:
        """Returns True if a Stop hook wants the turn to continue."""
        if self.hooks is None or not self.hooks.has_hooks(STOP):
            return False
        results = await self.hooks.run(STOP, self.session_id, abort_signal=signal)
        if signal.aborted:
            return False
        blocked = first_blocking(results)
        if blocked is None:
            self._report_hook_failures(STOP, results)
            return False
        add_user_message(self._messages, blocked.message)
        self._notify_messages()
        return True

    def _report_hook_failures(self, event: str, results: list[HookResult]) -> None:
        for result in results:
            if result.exit_code != 0 and not result.blocking:
                add_error_block(self._messages, f"{event} hook failed: {result.message}")
                self._notify_messages()

    def _flush_hook_feedback(self, signal: AbortSignal) -> None:
        """PostToolUse feedback goes to the model after the tool results."""
        feedback, self._hook_feedback = self._hook_feedback, []
        if signal.aborted:
            return
        for message in feedback:
            add_user_message(self._messages, message)
        if feedback:
            self._notify_messages()

    # =========================================================================
    # Compression
    # =========================================================================

    async def _compress(self, signal: AbortSignal) -> None:
        if signal.aborted:
            return
        to_compress, insert_index = get_messages_to_compress(self._messages, KEEP_LAST_BLOCKS)
        if not to_compress:
            return

        logger.info("Compressing %d messages (token limit %d exceeded)", len(to_compress), self.token_limit)
        await self._save_session()
        try:
            summary, usage = await run_abortable(
                self.provider.compress_messages(to_compress, abort_signal=signal),
                signal,
            )
        except AbortedError:
            return
        except Exception as e:
            logger.error("Context compression failed: %s", e)
            return

        if signal.aborted:
            return
        if usage:
            self._record_usage(usage)
        add_compress_block(self._messages, insert_index, summary)
        self._notify_messages()

    # =========================================================================
    # Bash mode
    # =========================================================================

    async def run_command(self, command: str) -> ProcessResult:
        """
        Run a command typed by the user, recording it as command output.

        Raises:
            TurnInProgressError: If a model turn is running
            ProcessBusyError: If another command is still running
        """
        if self._state.is_busy:
            raise TurnInProgressError(self._state.value)
        if self._command_runner.is_running:
            raise ProcessBusyError("Command already running")

        self._active_command = command
        add_command_output(self._messages, command)
        self._notify_messages()

        result = await self._command_runner.run(command, cwd=str(self.workdir))

        complete_command_output(self._messages, command, result.exit_code, result.output)
        self._notify_messages()
        await self._save_session()
        return result

    def abort_command(self) -> bool:
        return self._command_runner.abort()

    def _on_command_output(self, stdout: str, stderr: str, is_running: bool) -> None:
        if self._active_command is None:
            return
        update_command_output(self._messages, self._active_command, self._command_runner.output)
        self._notify_messages()

    # =========================================================================
    # Memory, sessions, lifecycle
    # =========================================================================

    def remember(self, text: str, user_scope: bool = False) -> Optional[Path]:
        """Save a '#' message to project (or user) memory."""
        if user_scope:
            return add_user_memory(text, self.user_memory_path)
        return add_memory(text, self.workdir, self.project_memory_file)

    def restore_session(self, session_id: str) -> None:
        """
        Continue a saved session.

        Raises:
            TurnInProgressError: If a turn is running
            FileNotFoundError: If the session does not exist
        """
        if self._state.is_busy:
            raise TurnInProgressError(self._state.value)
        if self.session_manager is None:
            raise FileNotFoundError("No session manager configured")

        data = self.session_manager.load_session(session_id)
        if data is None:
            raise FileNotFoundError(f"Session not found: {session_id}")

        self.session_id = data.id
        self._messages = list(data.state.messages)
        self._started_at = data.metadata.started_at
        logger.info("Restored session %s (%d messages)", session_id, len(self._messages))
        self._notify_messages()

    async def _save_session(self) -> None:
        if self.session_manager is None:
            return
        try:
            await asyncio.to_thread(
                self.session_manager.save_session,
                self.session_id,
                list(self._messages),
                list(self.usage.records),
                str(self.workdir),
                self._started_at,
            )
        except Exception:
            logger.error("Failed to save session %s", self.session_id, exc_info=True)

    def shutdown(self) -> None:
        """Abort everything in flight and stop background tasks."""
        self.abort("shutdown")
        self.abort_command()
        self.task_supervisor.shutdown()

    # =========================================================================
    # Notifications
    # =========================================================================

    def _set_state(self, state: TurnState) -> None:
        was_loading = self._state.is_busy
        self._state = state
        if was_loading != state.is_busy and self.on_loading_change:
            try:
                self.on_loading_change(state.is_busy)
            except Exception:
                logger.exception("Loading listener failed")

    def _notify_messages(self) -> None:
        if self.on_messages_change is None:
            return
        try:
            self.on_messages_change(list(self._messages))
        except Exception:
            logger.exception("Messages listener failed")

    def _record_usage(self, usage: Usage) -> None:
        self.usage.add(usage)
        if self.on_usage_added:
            try:
                self.on_usage_added(usage)
            except Exception:
                logger.exception("Usage listener failed")
