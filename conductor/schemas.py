"""
Pydantic schemas for the conductor core.

WHY THIS FILE EXISTS:
--------------------
Every piece of state that crosses a boundary lives here: messages shown to
the UI, tool calls streamed from the model, background task snapshots,
and the session files written to disk. Keeping them as Pydantic models
means:
1. Sessions round-trip through JSON without hand-written (de)serializers
2. Bad data (a block with an unknown type, a status that does not exist)
   fails loudly at the boundary instead of deep inside the engine
3. The UI receives typed objects it can render directly

MESSAGE STRUCTURE:
-----------------
A conversation is a list of Messages. Each Message holds an ordered list
of Blocks, and each Block is one of a fixed set of variants selected by
its `type` field:

    Message(role="assistant", blocks=[
        TextBlock(content="Let me look at that file."),
        ToolCallBlock(id="call_1", name="read", stage="end", result="..."),
    ])

Only the ConversationEngine appends to this list. Apart from the block
currently being streamed, blocks are never edited once written.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


# =============================================================================
# MESSAGE BLOCKS
# =============================================================================

class TextBlock(BaseModel):
    """Plain assistant or user text."""
    type: Literal["text"] = "text"
    content: str = ""


class ToolCallBlock(BaseModel):
    """
    A tool call requested by the model, from first streamed byte to result.

    Lifecycle:
        stage="running", streaming=True   -> arguments still arriving
        stage="running", streaming=False  -> arguments complete, tool executing
        stage="end"                       -> result or error recorded

    `arguments` is the raw text received so far. `args` is a display
    snapshot recomputed from it on every delta, and becomes the fully
    parsed argument object once the call completes.
    """
    type: Literal["tool_call"] = "tool_call"
    id: str
    name: str = ""
    arguments: str = ""
    args: dict[str, Any] = Field(default_factory=dict)
    stage: Literal["running", "end"] = "running"
    streaming: bool = True
    result: Optional[str] = None
    error: Optional[str] = None
    success: Optional[bool] = None


class CommandOutputBlock(BaseModel):
    """Output of a shell command the user typed directly (bash mode)."""
    type: Literal["command_output"] = "command_output"
    command: str
    output: str = ""
    is_running: bool = True
    exit_code: Optional[int] = None


class ErrorBlock(BaseModel):
    """An error that belongs in the conversation timeline."""
    type: Literal["error"] = "error"
    content: str


class CompressBlock(BaseModel):
    """Summary standing in for every message before it."""
    type: Literal["compress"] = "compress"
    content: str


class CustomCommandBlock(BaseModel):
    """A user-defined slash command expanded into a prompt."""
    type: Literal["custom_command"] = "custom_command"
    command_name: str
    content: str
    original_input: Optional[str] = None


Block = Annotated[
    Union[
        TextBlock,
        ToolCallBlock,
        CommandOutputBlock,
        ErrorBlock,
        CompressBlock,
        CustomCommandBlock,
    ],
    Field(discriminator="type"),
]


class Usage(BaseModel):
    """Token usage reported by one model call."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    model: Optional[str] = None
    operation_type: Literal["agent", "compress"] = "agent"


class Message(BaseModel):
    """One user or assistant message in the conversation."""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    role: Literal["user", "assistant"]
    blocks: list[Block] = Field(default_factory=list)
    usage: Optional[Usage] = None


# =============================================================================
# MODEL BOUNDARY
# =============================================================================
# These describe what flows in and out of ModelProvider.call_agent().

class ToolCallDelta(BaseModel):
    """
    Streaming update for one tool call.

    Never persisted. `arguments_so_far` is the full accumulated text, not
    just the newest fragment, so a consumer can rebuild its view from any
    single delta.
    """
    id: str
    name: str = ""
    arguments_so_far: str = ""
    is_complete: bool = False


class ToolCall(BaseModel):
    """A completed tool call as returned by the model."""
    id: str
    name: str
    arguments: str = ""


class AgentResponse(BaseModel):
    """Final result of one model round-trip."""
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    usage: Optional[Usage] = None
    finish_reason: Optional[str] = None


# =============================================================================
# TOOL SCHEMAS
# =============================================================================

class ToolParameter(BaseModel):
    """A parameter that a tool accepts."""
    name: str
    type: Literal["string", "integer", "number", "boolean", "object", "array"]
    description: str
    required: bool = True
    default: Optional[Any] = None


class ToolDefinition(BaseModel):
    """
    Definition of a tool the model can call.

    Example:
        ToolDefinition(
            name="bash",
            description="Run a shell command",
            parameters=[
                ToolParameter(name="command", type="string", description="Command to run"),
                ToolParameter(name="run_in_background", type="boolean",
                              description="Detach as a background task", required=False),
            ],
            backgroundable=True,
        )
    """
    name: str
    description: str
    parameters: list[ToolParameter] = Field(default_factory=list)
    backgroundable: bool = Field(
        default=False,
        description="Tool accepts run_in_background and then hands its work to the TaskSupervisor"
    )

    def to_function_schema(self) -> dict:
        """Render as an OpenAI-style function declaration."""
        properties = {}
        required = []
        for param in self.parameters:
            prop: dict[str, Any] = {
                "type": param.type,
                "description": param.description,
            }
            if param.default is not None:
                prop["default"] = param.default
            properties[param.name] = prop
            if param.required:
                required.append(param.name)

        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": properties,
                    "required": required,
                },
            },
        }


class ToolResult(BaseModel):
    """Normalized outcome of a tool invocation."""
    success: bool
    content: Optional[str] = None
    error: Optional[str] = None


# =============================================================================
# BACKGROUND TASKS
# =============================================================================

class TaskKind(str, Enum):
    SHELL = "shell"
    SUBAGENT = "subagent"


class TaskStatus(str, Enum):
    """
    Lifecycle of a background task.

    RUNNING is the only non-terminal status. Once a task leaves it, the
    status never changes again.
    """
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self is not TaskStatus.RUNNING


class BackgroundTask(BaseModel):
    """Point-in-time snapshot of a supervised task."""
    id: str
    kind: TaskKind
    descriptor: str = Field(description="Command line or subagent description")
    status: TaskStatus = TaskStatus.RUNNING
    start_time: datetime
    end_time: Optional[datetime] = None
    exit_code: Optional[int] = None
    runtime: float = Field(default=0.0, description="Seconds since start (or until end)")


class TaskOutput(BaseModel):
    """Accumulated output of a task."""
    stdout: str = ""
    stderr: str = ""
    status: TaskStatus


class TaskEvent(BaseModel):
    """Change notification published by the TaskSupervisor."""
    kind: Literal["created", "output", "status", "removed"]
    task: BackgroundTask


# =============================================================================
# ENGINE STATE & SESSIONS
# =============================================================================

class TurnState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    EXECUTING_TOOLS = "executing_tools"
    ABORTED = "aborted"

    @property
    def is_busy(self) -> bool:
        return self in (TurnState.SENDING, TurnState.STREAMING, TurnState.EXECUTING_TOOLS)


class SessionMetadata(BaseModel):
    workdir: str
    started_at: datetime
    last_active_at: datetime
    total_tokens: int = 0


class SessionState(BaseModel):
    messages: list[Message] = Field(default_factory=list)


class SessionData(BaseModel):
    """Shape of a session file on disk."""
    id: str
    timestamp: datetime
    version: str = "1.0.0"
    metadata: SessionMetadata
    state: SessionState = Field(default_factory=SessionState)
