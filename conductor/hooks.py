"""
Lifecycle hooks for conductor.

WHAT THIS FILE DOES:
-------------------
Runs user-configured shell commands at fixed points of a turn:

    PreToolUse   - before a tool call runs (can block it)
    PostToolUse  - after a tool call finished
    Stop         - when a turn ends without being aborted (can continue it)

CONFIG:
------
```yaml
hooks:
  PreToolUse:
    - matcher: "bash|write"       # regex on the tool name, omit for all tools
      command: "./scripts/guard.sh"
      timeout: 10
  Stop:
    - command: "pytest -q >&2 || exit 2"
```

EXIT CODES:
----------
    0      ok, stdout is ignored
    2      blocking. PreToolUse: the call is not run and stderr becomes its
           result. PostToolUse: stderr is handed to the model. Stop: stderr
           is handed to the model and the turn continues.
    other  non-blocking, stderr is shown as an error block

Commands run in the working directory through a ProcessRunner, one after
another, stopping at the first non-zero exit. Each gets the event as JSON
in CONDUCTOR_HOOK_INPUT and the project directory in CONDUCTOR_PROJECT_DIR.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from .cancellation import AbortSignal
from .process import ProcessRunner

logger = logging.getLogger(__name__)

PRE_TOOL_USE = "PreToolUse"
POST_TOOL_USE = "PostToolUse"
STOP = "Stop"
HOOK_EVENTS = (PRE_TOOL_USE, POST_TOOL_USE, STOP)

BLOCKING_EXIT_CODE = 2
DEFAULT_HOOK_TIMEOUT = 10.0


@dataclass
class HookConfig:
    """One hook command bound to an event."""
    event: str
    command: str
    matcher: Optional[str] = None
    timeout: float = DEFAULT_HOOK_TIMEOUT

    def applies_to(self, tool_name: Optional[str]) -> bool:
        if self.event == STOP or self.matcher in (None, "", "*"):
            return True
        if tool_name is None:
            return False
        try:
            return re.fullmatch(self.matcher, tool_name) is not None
        except re.error:
            return self.matcher == tool_name

    def to_dict(self) -> dict:
        result = {"command": self.command}
        if self.matcher:
            result["matcher"] = self.matcher
        if self.timeout != DEFAULT_HOOK_TIMEOUT:
            result["timeout"] = self.timeout
        return result


@dataclass
class HookResult:
    """Outcome of one hook command."""
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def blocking(self) -> bool:
        return self.exit_code == BLOCKING_EXIT_CODE

    @property
    def message(self) -> str:
        return self.stderr.strip() or "Hook execution failed"


def parse_hooks(data: Optional[dict]) -> list[HookConfig]:
    """
    Parse the `hooks:` config section.

    Raises:
        ValueError: For an unknown event name or an entry without a command
    """
    hooks = []
    for event, entries in (data or {}).items():
        if event not in HOOK_EVENTS:
            raise ValueError(f"Invalid hook event: {event}. Must be one of: {', '.join(HOOK_EVENTS)}")
        for entry in entries or []:
            if not entry or not entry.get("command"):
                raise ValueError(f"{event} hook is missing 'command'")
            hooks.append(HookConfig(
                event=event,
                command=entry["command"],
                matcher=entry.get("matcher"),
                timeout=float(entry.get("timeout", DEFAULT_HOOK_TIMEOUT)),
            ))
    return hooks


class HookRunner:
    """
    Runs the configured hooks for an event.

    Usage:
        runner = HookRunner(config.hooks, workdir)
        results = await runner.run(PRE_TOOL_USE, session_id, tool_name="bash",
                                   tool_input={"command": "rm -rf build"})
        blocked = first_blocking(results)
    """

    def __init__(self, hooks: list[HookConfig], workdir: Path):
        self.hooks = list(hooks)
        self.workdir = Path(workdir).resolve()

    def has_hooks(self, event: str, tool_name: Optional[str] = None) -> bool:
        return any(h.event == event and h.applies_to(tool_name) for h in self.hooks)

    async def run(
        self,
        event: str,
        session_id: str,
        tool_name: Optional[str] = None,
        tool_input: Optional[dict[str, Any]] = None,
        tool_response: Optional[dict[str, Any]] = None,
        abort_signal: Optional[AbortSignal] = None,
    ) -> list[HookResult]:
        """Run every matching hook in order until one exits non-zero."""
        payload = {
            "session_id": session_id,
            "cwd": str(self.workdir),
            "hook_event_name": event,
        }
        if tool_name is not None:
            payload["tool_name"] = tool_name
        if tool_input is not None:
            payload["tool_input"] = tool_input
        if tool_response is not None:
            payload["tool_response"] = tool_response

        results = []
        for hook in self.hooks:
            if hook.event != event or not hook.applies_to(tool_name):
                continue
            if abort_signal is not None and abort_signal.aborted:
                break
            result = await self._run_one(hook, payload, abort_signal)
            results.append(result)
            if result.exit_code != 0:
                logger.warning(
                    "%s hook %r exited with %d%s",
                    event, hook.command, result.exit_code, " (timed out)" if result.timed_out else "",
                )
                break
        logger.debug("Ran %d %s hook(s) for %s", len(results), event, tool_name or "turn")
        return results

    async def _run_one(
        self,
        hook: HookConfig,
        payload: dict,
        abort_signal: Optional[AbortSignal],
    ) -> HookResult:
        runner = ProcessRunner()
        timed_out = False

        def expire():
            nonlocal timed_out
            timed_out = True
            runner.abort()

        timer = asyncio.get_running_loop().call_later(hook.timeout, expire)
        unregister = abort_signal.on_abort(runner.abort) if abort_signal else None
        env = {
            "CONDUCTOR_HOOK_INPUT": json.dumps(payload, default=str),
            "CONDUCTOR_PROJECT_DIR": str(self.workdir),
        }
        try:
            result = await runner.run(hook.command, cwd=str(self.workdir), env=env)
        finally:
            timer.cancel()
            if unregister:
                unregister()

        return HookResult(
            command=hook.command,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            timed_out=timed_out,
        )


def first_blocking(results: list[HookResult]) -> Optional[HookResult]:
    return next((r for r in results if r.blocking), None)
