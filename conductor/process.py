"""
Single-command process runner.

WHAT THIS FILE DOES:
-------------------
Runs ONE shell command at a time, streaming stdout/stderr to a callback as
bytes arrive, and resolves with the exit code. Used for:
- foreground `bash` tool calls (killed when the turn is aborted)
- commands the user types directly in bash mode
- each background shell task under the TaskSupervisor

EXIT CODES:
----------
    normal exit           -> the process's own exit code
    killed by a signal    -> 130 (even for SIGKILL; kept for compatibility
                             with existing sessions, not per-signal)
    spawn failure         -> 1, with "Error: <message>" in the output
    abort()               -> 130, reported immediately

After abort() the runner is "not running" at once. When the OS later
reports the real exit, that event is dropped rather than reported twice.
"""

import asyncio
import codecs
import logging
import os
import signal
from dataclasses import dataclass, field
from typing import Callable, Optional

from .errors import ProcessBusyError

logger = logging.getLogger(__name__)

SIGNAL_EXIT_CODE = 130
SPAWN_ERROR_EXIT_CODE = 1

_READ_CHUNK = 4096
_REAP_GRACE = 1.0
_USE_PROCESS_GROUP = os.name == "posix" and hasattr(os, "killpg")

OutputCallback = Callable[[str, str, bool], None]


@dataclass
class ProcessResult:
    """Final state of one run."""
    exit_code: int
    stdout: str
    stderr: str
    output: str
    aborted: bool = False
    spawn_error: Optional[str] = None


@dataclass
class _Run:
    command: str
    process: Optional[asyncio.subprocess.Process] = None
    stdout: str = ""
    stderr: str = ""
    output: str = ""
    running: bool = True
    aborted: bool = False
    exit_code: Optional[int] = None
    spawn_error: Optional[str] = None
    abort_event: asyncio.Event = field(default_factory=asyncio.Event)

    def result(self) -> ProcessResult:
        return ProcessResult(
            exit_code=self.exit_code if self.exit_code is not None else SIGNAL_EXIT_CODE,
            stdout=self.stdout,
            stderr=self.stderr,
            output=self.output,
            aborted=self.aborted,
            spawn_error=self.spawn_error,
        )


class ProcessRunner:
    """
    Runs shell commands one at a time with progressive output.

    Usage:
        runner = ProcessRunner(on_output_update=lambda out, err, running: ...)
        result = await runner.run("pytest -q", cwd="/project")
        result.exit_code  # 0

        # From elsewhere, while run() is awaiting:
        runner.abort()
    """

    def __init__(self, on_output_update: Optional[OutputCallback] = None):
        """
        Args:
            on_output_update: Called with (stdout, stderr, is_running) holding
                the full accumulated buffers after every chunk and once more
                when the run ends
        """
        self.on_output_update = on_output_update
        self._run: Optional[_Run] = None

    # -------------------------------------------------------------------------
    # Observers
    # -------------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._run is not None and self._run.running

    @property
    def stdout(self) -> str:
        return self._run.stdout if self._run else ""

    @property
    def stderr(self) -> str:
        return self._run.stderr if self._run else ""

    @property
    def output(self) -> str:
        """stdout and stderr interleaved in arrival order."""
        return self._run.output if self._run else ""

    @property
    def exit_code(self) -> Optional[int]:
        return self._run.exit_code if self._run else None

    # -------------------------------------------------------------------------
    # Running
    # -------------------------------------------------------------------------

    async def run(
        self,
        command: str,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
    ) -> ProcessResult:
        """
        Run a command through the platform shell.

        Args:
            command: Shell command line
            cwd: Working directory (defaults to the current one)
            env: Variables layered over the inherited environment

        Returns:
            ProcessResult once the command exits or is aborted

        Raises:
            ProcessBusyError: If a command is already running on this runner
        """
        if self.is_running:
            raise ProcessBusyError("Command already running")

        state = _Run(command=command)
        self._run = state
        merged_env = {**os.environ, **(env or {})}

        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=merged_env,
                start_new_session=_USE_PROCESS_GROUP,
            )
        except OSError as e:
            logger.warning("Failed to spawn %r: %s", command, e)
            state.spawn_error = str(e)
            self._append(state, "stderr", f"\nError: {e}\n")
            return self._finish(state, SPAWN_ERROR_EXIT_CODE)

        state.process = process
        if state.aborted:
            _kill(process)
            return state.result()

        drain = asyncio.ensure_future(self._drain(state, process))
        abort_wait = asyncio.ensure_future(state.abort_event.wait())
        try:
            await asyncio.wait({drain, abort_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            self.abort()
            drain.add_done_callback(_report_drain_failure)
            raise
        finally:
            abort_wait.cancel()

        if not drain.done():
            # Aborted. Give the OS a moment to reap, but never block on it.
            await asyncio.wait({drain}, timeout=_REAP_GRACE)
            drain.add_done_callback(_report_drain_failure)
            return state.result()

        returncode = drain.result()
        if state.aborted:
            return state.result()

        code = SIGNAL_EXIT_CODE if returncode < 0 else returncode
        return self._finish(state, code)

    def abort(self) -> bool:
        """
        Force-terminate the running command.

        Returns:
            True if a command was running, False if there was nothing to abort
        """
        state = self._run
        if state is None or not state.running:
            return False

        state.aborted = True
        state.running = False
        state.exit_code = SIGNAL_EXIT_CODE
        state.abort_event.set()

        if state.process is not None and state.process.returncode is None:
            _kill(state.process)

        logger.info("Aborted command %r", state.command)
        self._emit(state)
        return True

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _drain(self, state: _Run, process: asyncio.subprocess.Process) -> int:
        await asyncio.gather(
            self._pump(state, process.stdout, "stdout"),
            self._pump(state, process.stderr, "stderr"),
        )
        return await process.wait()

    async def _pump(self, state: _Run, stream: asyncio.StreamReader, channel: str) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                self._append(state, channel, text)
        tail = decoder.decode(b"", final=True)
        if tail:
            self._append(state, channel, tail)

    def _append(self, state: _Run, channel: str, text: str) -> None:
        if not state.running:
            return
        if channel == "stdout":
            state.stdout += text
        else:
            state.stderr += text
        state.output += text
        self._emit(state)

    def _finish(self, state: _Run, exit_code: int) -> ProcessResult:
        state.exit_code = exit_code
        state.running = False
        self._emit(state)
        return state.result()

    def _emit(self, state: _Run) -> None:
        if self.on_output_update is None or state is not self._run:
            return
        try:
            self.on_output_update(state.stdout, state.stderr, state.running)
        except Exception:
            logger.exception("Output callback failed for %r", state.command)


def _kill(process: asyncio.subprocess.Process) -> None:
    """SIGKILL the process group, falling back to the shell process itself."""
    try:
        if _USE_PROCESS_GROUP:
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except ProcessLookupError:
        logger.debug("Process %s already exited", process.pid)
    except PermissionError:
        logger.warning("Cannot signal process group %s, killing shell only", process.pid)
        process.kill()


def _report_drain_failure(task: "asyncio.Future[int]") -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error("Reaping aborted process failed: %s", error)
