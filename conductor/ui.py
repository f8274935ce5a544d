"""
Rich terminal rendering for the conductor CLI.

WHY THIS FILE EXISTS:
--------------------
The engine only produces data (messages, blocks, task snapshots). This
module turns that data into readable terminal output:

- show_message_blocks() - Text as markdown, tool calls and errors as panels
- show_tasks() - Background task table
- show_sessions_list() - Saved sessions
- tool_status_line() - One-line spinner text for a streaming tool call
"""

from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from .schemas import (
    BackgroundTask,
    CommandOutputBlock,
    CompressBlock,
    CustomCommandBlock,
    ErrorBlock,
    Message,
    TextBlock,
    ToolCallBlock,
)

# Global console instance for consistent output
console = Console()

STATUS_COLORS = {
    "running": "yellow",
    "completed": "green",
    "failed": "red",
    "killed": "magenta",
}

_PREVIEW_CHARS = 1200


def _preview(text: str, limit: int = _PREVIEW_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n... ({len(text) - limit} more characters)"


# =============================================================================
# STATUS UTILITIES
# =============================================================================

def show_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def show_error(message: str) -> None:
    console.print(f"[red]✗[/red] {message}")


def show_info(message: str) -> None:
    console.print(f"[blue]ℹ[/blue] {message}")


def show_thinking(message: str = "Thinking..."):
    """
    Context manager that shows a spinner while a turn runs.

    Usage:
        with show_thinking() as status:
            status.update("Running bash...")
    """
    return console.status(f"[bold blue]{message}[/bold blue]", spinner="dots")


def _format_args(args: dict) -> str:
    return escape(", ".join(f"{k}={str(v)[:40]!r}" for k, v in args.items()))


def tool_status_line(block: ToolCallBlock) -> str:
    """Spinner text for a tool call, built from its known-complete args."""
    return f"[bold blue]{block.name or 'tool'}[/bold blue]({_format_args(block.args)})"


# =============================================================================
# MESSAGE DISPLAY
# =============================================================================

def show_message_blocks(messages: list[Message]) -> None:
    """Print every block of the given messages."""
    for message in messages:
        for block in message.blocks:
            if message.role == "user":
                if isinstance(block, CustomCommandBlock):
                    console.print(f"[dim]/{block.command_name}[/dim]")
                continue

            if isinstance(block, TextBlock) and block.content:
                console.print(Markdown(block.content))
            elif isinstance(block, ToolCallBlock):
                _show_tool_block(block)
            elif isinstance(block, CommandOutputBlock):
                _show_command_block(block)
            elif isinstance(block, ErrorBlock):
                show_error(escape(block.content))
            elif isinstance(block, CompressBlock):
                console.print("[dim]Earlier conversation compressed.[/dim]")


def _show_tool_block(block: ToolCallBlock) -> None:
    call = f"{block.name}({_format_args(block.args)})"
    if block.success is None:
        border, title = "dim", f"{call} · interrupted"
    elif block.success:
        border, title = "green", call
    else:
        border, title = "red", f"{call} · failed"

    body = escape(_preview(block.result or ""))
    if block.error:
        error = f"[red]{escape(block.error)}[/red]"
        body = f"{body}\n{error}" if body else error
    console.print(Panel(
        body or "[dim](no output)[/dim]",
        title=title,
        title_align="left",
        border_style=border,
        box=box.ROUNDED,
    ))


def _show_command_block(block: CommandOutputBlock) -> None:
    color = "green" if block.exit_code == 0 else "red"
    console.print(Panel(
        escape(_preview(block.output)) or "[dim](no output)[/dim]",
        title=f"$ {escape(block.command)}",
        title_align="left",
        subtitle=f"[{color}]exit {block.exit_code}[/{color}]",
        border_style=color,
        box=box.ROUNDED,
    ))


# =============================================================================
# TASKS / SESSIONS
# =============================================================================

def show_tasks(tasks: list[BackgroundTask]) -> None:
    """Display the background task table."""
    if not tasks:
        console.print("[dim]No background tasks.[/dim]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Runtime", justify="right")
    table.add_column("Command / description")

    for task in tasks:
        color = STATUS_COLORS.get(task.status.value, "white")
        exit_info = f" ({task.exit_code})" if task.exit_code is not None else ""
        table.add_row(
            task.id,
            task.kind.value,
            f"[{color}]{task.status.value}{exit_info}[/{color}]",
            f"{task.runtime:.1f}s",
            escape(task.descriptor[:60]),
        )

    console.print(table)


def show_sessions_list(sessions: list[dict]) -> None:
    """
    Display a list of sessions.

    Args:
        sessions: Session summaries from SessionManager.list_all()
    """
    if not sessions:
        console.print("[dim]No sessions found.[/dim]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Workdir")
    table.add_column("Messages", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Last active", style="dim")

    for session in sessions:
        table.add_row(
            session.get("session_id", "?"),
            escape(session.get("workdir", "")),
            str(session.get("message_count", 0)),
            f"{session.get('total_tokens', 0):,}",
            str(session.get("last_active_at", ""))[:19],
        )

    console.print(table)


def show_welcome(workdir: str, session_id: str) -> None:
    console.print(Panel.fit(
        f"[bold blue]conductor[/bold blue]\n"
        f"[dim]{escape(workdir)} · session {session_id}[/dim]\n\n"
        "[dim]!cmd runs a shell command · #note saves to memory · "
        "/tasks · /stop ID · /usage · /exit[/dim]",
        border_style="blue"
    ))
