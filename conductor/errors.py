"""
Exception types raised by the conductor core.

Everything the engine raises on purpose derives from ConductorError so a
host application can catch the whole family in one place. Failures that
belong to the conversation (tool errors, transport errors, spawn errors)
are NOT raised; they become blocks in the message timeline instead.
"""


class ConductorError(Exception):
    """Base class for all conductor errors."""


class TurnInProgressError(ConductorError):
    """A message was sent while a foreground turn is still running."""

    def __init__(self, state: str):
        super().__init__(f"Cannot send a message while a turn is {state}")
        self.state = state


class ProcessBusyError(ConductorError):
    """A ProcessRunner was asked to run a second command concurrently."""

    def __init__(self, message: str = "Command already running"):
        super().__init__(message)


class AbortedError(ConductorError):
    """The AbortSignal governing an awaited operation fired."""

    def __init__(self, reason: str = "aborted"):
        super().__init__(reason)
        self.reason = reason


class ToolArgumentError(ConductorError):
    """A completed tool argument string is not a JSON object."""

    def __init__(self, tool_name: str, detail: str):
        super().__init__(f"Failed to parse tool arguments for '{tool_name}': {detail}")
        self.tool_name = tool_name
        self.detail = detail


class ProviderError(ConductorError):
    """The LLM endpoint failed or returned something we could not read."""
