"""
Background task supervision.

WHAT THIS FILE DOES:
-------------------
Tracks every long-running piece of work that was detached from the
foreground conversation: shell commands started with
`run_in_background`, and subagents delegated in background mode.

TASK TABLE:
----------
    task_1  shell     "npm run dev"        running
    task_2  subagent  "audit the tests"    completed  exit=0
    task_3  shell     "pytest -x"          killed     exit=130

- Ids are `task_<n>`, unique for the life of the supervisor
- Status only moves forward: running -> completed | failed | killed
- exit_code is written exactly once, when status leaves running
- Output buffers only grow; readers get a snapshot

HOW THE UI FOLLOWS ALONG:
------------------------
Instead of polling, subscribers are told about every change:

    unsubscribe = supervisor.subscribe(lambda tasks: render(tasks))

    async for event in supervisor.events():
        print(event.kind, event.task.id, event.task.status)

EVICTION:
--------
By default finished tasks are kept until the supervisor shuts down, as an
audit trail. Pass `max_completed` to keep only the newest N finished
tasks; running tasks are never evicted.
"""

import asyncio
import itertools
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

from .process import ProcessRunner, SIGNAL_EXIT_CODE, SPAWN_ERROR_EXIT_CODE
from .schemas import (
    BackgroundTask,
    TaskEvent,
    TaskKind,
    TaskOutput,
    TaskStatus,
)

logger = logging.getLogger(__name__)

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")

TasksListener = Callable[[list[BackgroundTask]], None]


def strip_ansi(text: str) -> str:
    """Remove ANSI color and cursor sequences."""
    return _ANSI_RE.sub("", text)


@dataclass
class _TaskRecord:
    id: str
    kind: TaskKind
    descriptor: str
    start_time: datetime
    status: TaskStatus = TaskStatus.RUNNING
    end_time: Optional[datetime] = None
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    cancel: Optional[Callable[[], None]] = None
    runner: Optional[ProcessRunner] = None
    worker: Optional[asyncio.Task] = None
    timeout_handle: Optional[asyncio.TimerHandle] = None

    def snapshot(self) -> BackgroundTask:
        end = self.end_time or datetime.now()
        return BackgroundTask(
            id=self.id,
            kind=self.kind,
            descriptor=self.descriptor,
            status=self.status,
            start_time=self.start_time,
            end_time=self.end_time,
            exit_code=self.exit_code,
            runtime=(end - self.start_time).total_seconds(),
        )


class TaskSupervisor:
    """
    Owns the background task table.

    All mutation happens on the event loop thread, so the table has a
    single writer and needs no locking.

    Usage:
        supervisor = TaskSupervisor(workdir="/project")
        task_id = supervisor.start_shell("npm run dev")

        supervisor.get_output(task_id)      # TaskOutput(stdout=..., status=running)
        supervisor.stop(task_id)            # True
        supervisor.stop(task_id)            # False, already killed
    """

    def __init__(
        self,
        workdir: Path,
        max_completed: Optional[int] = None,
        on_tasks_change: Optional[TasksListener] = None,
    ):
        """
        Args:
            workdir: Directory background shells run in
            max_completed: Keep at most this many finished tasks (None = all)
            on_tasks_change: Listener called with the full task list on change
        """
        if max_completed is not None and max_completed < 0:
            raise ValueError("max_completed must be >= 0")
        self.workdir = Path(workdir)
        self.max_completed = max_completed
        self._tasks: dict[str, _TaskRecord] = {}
        self._counter = itertools.count(1)
        self._listeners: list[TasksListener] = []
        self._queues: list[asyncio.Queue] = []
        if on_tasks_change is not None:
            self._listeners.append(on_tasks_change)

    # =========================================================================
    # Creating tasks
    # =========================================================================

    def create(
        self,
        kind: TaskKind,
        descriptor: str,
        cancel: Optional[Callable[[], None]] = None,
    ) -> str:
        """
        Register a running task that something else drives.

        Args:
            kind: shell or subagent
            descriptor: Command line or short description
            cancel: Called by stop() to terminate the underlying work

        Returns:
            The new task id
        """
        task_id = f"task_{next(self._counter)}"
        record = _TaskRecord(
            id=task_id,
            kind=TaskKind(kind),
            descriptor=descriptor,
            start_time=datetime.now(),
            cancel=cancel,
        )
        self._tasks[task_id] = record
        logger.info("Started %s %s: %s", record.kind.value, task_id, descriptor)
        self._notify("created", record)
        return task_id

    def start_shell(
        self,
        command: str,
        timeout: Optional[float] = None,
        env: Optional[dict[str, str]] = None,
    ) -> str:
        """
        Start a shell command as a background task.

        Must be called from a running event loop.

        Args:
            command: Shell command line
            timeout: Seconds after which the task is stopped (None = never)
            env: Extra environment variables

        Returns:
            The new task id
        """
        loop = asyncio.get_running_loop()
        task_id = self.create(TaskKind.SHELL, command)
        record = self._tasks[task_id]

        def on_output(stdout: str, stderr: str, is_running: bool) -> None:
            if record.status is not TaskStatus.RUNNING:
                return
            record.stdout = strip_ansi(stdout)
            record.stderr = strip_ansi(stderr)
            self._notify("output", record)

        record.runner = ProcessRunner(on_output_update=on_output)
        record.cancel = record.runner.abort
        if timeout and timeout > 0:
            record.timeout_handle = loop.call_later(timeout, self._on_timeout, task_id)
        record.worker = loop.create_task(self._run_shell(record, command, env))
        return task_id

    async def _run_shell(
        self,
        record: _TaskRecord,
        command: str,
        env: Optional[dict[str, str]],
    ) -> None:
        if record.status is not TaskStatus.RUNNING:
            return
        try:
            result = await record.runner.run(command, cwd=str(self.workdir), env=env)
        except Exception as e:
            logger.exception("Background task %s crashed", record.id)
            record.stderr += f"\nProcess error: {strip_ansi(str(e))}"
            self._transition(record.id, TaskStatus.FAILED, SPAWN_ERROR_EXIT_CODE)
            return
        finally:
            if record.timeout_handle is not None:
                record.timeout_handle.cancel()

        if result.aborted:
            return
        status = TaskStatus.COMPLETED if result.exit_code == 0 else TaskStatus.FAILED
        self._transition(record.id, status, result.exit_code)

    def _on_timeout(self, task_id: str) -> None:
        logger.info("Background task %s timed out", task_id)
        self.stop(task_id)

    # =========================================================================
    # Driving externally managed tasks
    # =========================================================================

    def append_output(self, task_id: str, stdout: str = "", stderr: str = "") -> None:
        """Append to a running task's buffers. Ignored once the task is terminal."""
        record = self._tasks.get(task_id)
        if record is None or record.status is not TaskStatus.RUNNING:
            return
        record.stdout += strip_ansi(stdout)
        record.stderr += strip_ansi(stderr)
        self._notify("output", record)

    def finish(self, task_id: str, status: TaskStatus, exit_code: int) -> bool:
        """
        Move an externally driven task to a terminal status.

        Returns:
            True if the transition happened, False if the task was unknown
            or already terminal
        """
        status = TaskStatus(status)
        if status is TaskStatus.RUNNING:
            raise ValueError("finish() needs a terminal status")
        return self._transition(task_id, status, exit_code)

    # =========================================================================
    # Queries
    # =========================================================================

    def list(self) -> list[BackgroundTask]:
        """Snapshots of every task, oldest first."""
        return [record.snapshot() for record in self._tasks.values()]

    def get(self, task_id: str) -> Optional[BackgroundTask]:
        record = self._tasks.get(task_id)
        return record.snapshot() if record else None

    def get_output(self, task_id: str, filter: Optional[str] = None) -> Optional[TaskOutput]:
        """
        Full accumulated output of a task.

        Args:
            task_id: Task to read
            filter: Optional regex; only matching lines are returned

        Returns:
            TaskOutput, or None if the task does not exist
        """
        record = self._tasks.get(task_id)
        if record is None:
            return None

        stdout, stderr = record.stdout, record.stderr
        if filter:
            try:
                pattern = re.compile(filter)
            except re.error as e:
                logger.warning("Invalid output filter %r: %s", filter, e)
            else:
                stdout = "\n".join(line for line in stdout.split("\n") if pattern.search(line))
                stderr = "\n".join(line for line in stderr.split("\n") if pattern.search(line))

        return TaskOutput(stdout=stdout, stderr=stderr, status=record.status)

    # =========================================================================
    # Control
    # =========================================================================

    def stop(self, task_id: str) -> bool:
        """
        Force-terminate a running task.

        No-op for unknown or already finished tasks: status and exit code
        stay exactly as they were.

        Returns:
            True if the task was running and is now killed
        """
        record = self._tasks.get(task_id)
        if record is None or record.status is not TaskStatus.RUNNING:
            return False

        if record.cancel is not None:
            try:
                record.cancel()
            except Exception:
                logger.exception("Failed to cancel task %s", task_id)

        return self._transition(task_id, TaskStatus.KILLED, SIGNAL_EXIT_CODE)

    def remove(self, task_id: str) -> bool:
        """
        Drop a finished task from the table (explicit user action).

        Returns:
            False if the task is unknown or still running
        """
        record = self._tasks.get(task_id)
        if record is None or record.status is TaskStatus.RUNNING:
            return False
        del self._tasks[task_id]
        self._notify("removed", record)
        return True

    def shutdown(self) -> None:
        """Stop every running task and clear the table."""
        for task_id in [t for t, r in self._tasks.items() if r.status is TaskStatus.RUNNING]:
            self.stop(task_id)
        removed = list(self._tasks.values())
        self._tasks.clear()
        for record in removed:
            self._notify("removed", record)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(self, listener: TasksListener) -> Callable[[], None]:
        """
        Call `listener` with the full task list after every change.

        Returns:
            A function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def events(self) -> AsyncIterator[TaskEvent]:
        """Yield every TaskEvent from now on, in the order they happened."""
        queue: asyncio.Queue = asyncio.Queue()
        self._queues.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.remove(queue)

    # =========================================================================
    # Internals
    # =========================================================================

    def _transition(self, task_id: str, status: TaskStatus, exit_code: int) -> bool:
        record = self._tasks.get(task_id)
        if record is None or record.status is not TaskStatus.RUNNING:
            return False

        record.status = status
        record.exit_code = exit_code
        record.end_time = datetime.now()
        if record.timeout_handle is not None:
            record.timeout_handle.cancel()
        logger.info("Task %s %s (exit %s)", task_id, status.value, exit_code)

        self._notify("status", record)
        self._evict()
        return True

    def _evict(self) -> None:
        if self.max_completed is None:
            return
        finished = sorted(
            (r for r in self._tasks.values() if r.status.is_terminal),
            key=lambda r: r.end_time,
        )
        excess = len(finished) - self.max_completed
        for record in finished[:max(excess, 0)]:
            del self._tasks[record.id]
            logger.debug("Evicted finished task %s", record.id)
            self._notify("removed", record)

    def _notify(self, kind: str, record: _TaskRecord) -> None:
        event = TaskEvent(kind=kind, task=record.snapshot())
        for queue in self._queues:
            queue.put_nowait(event)

        tasks = self.list()
        for listener in list(self._listeners):
            try:
                listener(tasks)
            except Exception:
                logger.exception("Task listener failed")
