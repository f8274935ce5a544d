"""
Operations on the conversation's message list.

The ConversationEngine owns the list; these helpers are the only way it
changes. Each helper mutates the list in place and returns the block it
touched, so the engine can notify the UI afterwards.
"""

from typing import Any, Optional

from .schemas import (
    CommandOutputBlock,
    CompressBlock,
    CustomCommandBlock,
    ErrorBlock,
    Message,
    TextBlock,
    ToolCallBlock,
    Usage,
)

# Block types that count towards "recent context" when deciding what to
# compress. Errors and command output are not sent to the model verbatim.
_CONTEXT_BLOCK_TYPES = ("text", "tool_call")


def add_user_message(messages: list[Message], content: str) -> Message:
    message = Message(role="user", blocks=[TextBlock(content=content)])
    messages.append(message)
    return message


def add_custom_command_message(
    messages: list[Message],
    command_name: str,
    content: str,
    original_input: Optional[str] = None,
) -> Message:
    """Record an expanded slash command as the user's message."""
    message = Message(role="user", blocks=[
        CustomCommandBlock(command_name=command_name, content=content, original_input=original_input)
    ])
    messages.append(message)
    return message


def add_assistant_message(
    messages: list[Message],
    content: str = "",
    usage: Optional[Usage] = None,
) -> Message:
    """Open a new assistant message, optionally starting with text."""
    blocks = [TextBlock(content=content)] if content else []
    message = Message(role="assistant", blocks=blocks, usage=usage)
    messages.append(message)
    return message


def _last_assistant(messages: list[Message]) -> Message:
    if messages and messages[-1].role == "assistant":
        return messages[-1]
    return add_assistant_message(messages)


def set_assistant_text(messages: list[Message], content: str) -> TextBlock:
    """Replace the streaming text of the trailing assistant message."""
    message = _last_assistant(messages)
    for block in message.blocks:
        if isinstance(block, TextBlock):
            block.content = content
            return block
    block = TextBlock(content=content)
    message.blocks.insert(0, block)
    return block


def find_tool_block(messages: list[Message], tool_id: str) -> Optional[ToolCallBlock]:
    for message in reversed(messages):
        if message.role != "assistant":
            continue
        for block in message.blocks:
            if isinstance(block, ToolCallBlock) and block.id == tool_id:
                return block
    return None


def update_tool_block(messages: list[Message], tool_id: str, **fields: Any) -> ToolCallBlock:
    """
    Update the tool block with `tool_id`, creating it if needed.

    New blocks go into the trailing assistant message (opened if the last
    message is not an assistant one).

    Example:
        update_tool_block(messages, "call_1", name="read",
                          arguments='{"path": "a.py"', args={})
    """
    block = find_tool_block(messages, tool_id)
    if block is None:
        block = ToolCallBlock(id=tool_id)
        _last_assistant(messages).blocks.append(block)
    for key, value in fields.items():
        setattr(block, key, value)
    return block


def finalize_tool_blocks(messages: list[Message]) -> int:
    """
    Close tool blocks left running by an aborted turn.

    They are marked ended without an error block, so the timeline shows
    the call as interrupted rather than failed.

    Returns:
        Number of blocks closed
    """
    closed = 0
    for message in messages:
        for block in message.blocks:
            if isinstance(block, ToolCallBlock) and block.stage == "running":
                block.stage = "end"
                block.streaming = False
                closed += 1
    return closed


def add_error_block(messages: list[Message], content: str) -> ErrorBlock:
    block = ErrorBlock(content=content)
    _last_assistant(messages).blocks.append(block)
    return block


# =============================================================================
# COMMAND OUTPUT (bash mode)
# =============================================================================

def add_command_output(messages: list[Message], command: str) -> CommandOutputBlock:
    block = CommandOutputBlock(command=command)
    messages.append(Message(role="assistant", blocks=[block]))
    return block


def _running_command_block(messages: list[Message], command: str) -> Optional[CommandOutputBlock]:
    for message in reversed(messages):
        for block in reversed(message.blocks):
            if (
                isinstance(block, CommandOutputBlock)
                and block.command == command
                and block.is_running
            ):
                return block
    return None


def update_command_output(
    messages: list[Message],
    command: str,
    output: str,
) -> Optional[CommandOutputBlock]:
    block = _running_command_block(messages, command)
    if block is not None:
        block.output = output
    return block


def complete_command_output(
    messages: list[Message],
    command: str,
    exit_code: int,
    output: Optional[str] = None,
) -> Optional[CommandOutputBlock]:
    block = _running_command_block(messages, command)
    if block is not None:
        if output is not None:
            block.output = output
        block.is_running = False
        block.exit_code = exit_code
    return block


# =============================================================================
# COMPRESSION
# =============================================================================

def get_messages_to_compress(
    messages: list[Message],
    keep_last: int = 7,
) -> tuple[list[Message], int]:
    """
    Split history into (messages to summarize, insert index).

    Walks backwards counting text and tool blocks until `keep_last` have
    been seen; that message and everything after it are kept verbatim.

    Returns:
        (messages before the boundary, index where the summary goes)
    """
    seen = 0
    for index in range(len(messages) - 1, -1, -1):
        for block in messages[index].blocks:
            if block.type in _CONTEXT_BLOCK_TYPES:
                seen += 1
                if seen >= keep_last:
                    return messages[:index], index
    return [], 0


def add_compress_block(messages: list[Message], insert_index: int, content: str) -> CompressBlock:
    """Insert a summary message at `insert_index`."""
    block = CompressBlock(content=content)
    messages.insert(insert_index, Message(role="assistant", blocks=[block]))
    return block


def messages_since_compression(messages: list[Message]) -> tuple[Optional[str], list[Message]]:
    """
    History the model should see.

    Returns:
        (summary of the latest compress block or None, messages after it)
    """
    for index in range(len(messages) - 1, -1, -1):
        message = messages[index]
        if message.role != "assistant":
            continue
        for block in message.blocks:
            if isinstance(block, CompressBlock):
                return block.content, messages[index + 1:]
    return None, list(messages)


def last_assistant_text(messages: list[Message]) -> str:
    """Text of the most recent assistant message that has any."""
    for message in reversed(messages):
        if message.role != "assistant":
            continue
        texts = [b.content for b in message.blocks if isinstance(b, TextBlock) and b.content]
        if texts:
            return "\n".join(texts)
    return ""
