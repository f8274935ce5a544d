"""
conductor - execution core for an interactive coding assistant.

Turns a user request into a chain of model round-trips and tool calls,
streaming every step to the UI:
1. Partial tool arguments are shown while the model is still typing
2. Tools and shell commands run with cancellation at any point
3. Long-running commands and subagents run as supervised background tasks
4. Conversations persist as sessions and can be resumed
5. Configured hook commands can veto tool calls or keep a turn going
"""

__version__ = "0.1.0"

from .cancellation import AbortSignal, run_abortable
from .config import Config, load_config, get_default_config, save_config
from .engine import ConversationEngine
from .errors import (
    ConductorError,
    TurnInProgressError,
    ProcessBusyError,
    AbortedError,
    ToolArgumentError,
    ProviderError,
)
from .hooks import HookConfig, HookResult, HookRunner
from .memory import combine_memory, get_combined_memory, add_memory, add_user_memory
from .process import ProcessRunner, ProcessResult
from .providers import ModelProvider, OpenAIProvider, OllamaProvider, get_provider
from .schemas import (
    Message,
    TextBlock,
    ToolCallBlock,
    CommandOutputBlock,
    ErrorBlock,
    CompressBlock,
    CustomCommandBlock,
    ToolCallDelta,
    ToolCall,
    AgentResponse,
    Usage,
    ToolDefinition,
    ToolParameter,
    ToolResult,
    BackgroundTask,
    TaskKind,
    TaskStatus,
    TaskOutput,
    TaskEvent,
    TurnState,
)
from .session import SessionManager
from .streaming import extract_complete_args
from .subagents import SubagentRunner, SubagentRegistry, register_subagent_tool
from .tasks import TaskSupervisor
from .tools import (
    ToolContext,
    ToolRegistry,
    create_default_tools,
    list_project_files,
    parse_tool_arguments,
)

__all__ = [
    # Engine
    "ConversationEngine",
    "AbortSignal",
    "run_abortable",
    # Streaming
    "extract_complete_args",
    # Processes & tasks
    "ProcessRunner",
    "ProcessResult",
    "TaskSupervisor",
    # Tools
    "ToolContext",
    "ToolRegistry",
    "create_default_tools",
    "parse_tool_arguments",
    "list_project_files",
    "SubagentRunner",
    "SubagentRegistry",
    "register_subagent_tool",
    # Hooks
    "HookConfig",
    "HookResult",
    "HookRunner",
    # Providers
    "ModelProvider",
    "OpenAIProvider",
    "OllamaProvider",
    "get_provider",
    # Memory & sessions
    "combine_memory",
    "get_combined_memory",
    "add_memory",
    "add_user_memory",
    "SessionManager",
    # Config
    "Config",
    "load_config",
    "get_default_config",
    "save_config",
    # Errors
    "ConductorError",
    "TurnInProgressError",
    "ProcessBusyError",
    "AbortedError",
    "ToolArgumentError",
    "ProviderError",
    # Schemas
    "Message",
    "TextBlock",
    "ToolCallBlock",
    "CommandOutputBlock",
    "ErrorBlock",
    "CompressBlock",
    "CustomCommandBlock",
    "ToolCallDelta",
    "ToolCall",
    "AgentResponse",
    "Usage",
    "ToolDefinition",
    "ToolParameter",
    "ToolResult",
    "BackgroundTask",
    "TaskKind",
    "TaskStatus",
    "TaskOutput",
    "TaskEvent",
    "TurnState",
]
