"""
Project and user memory.

WHAT THIS FILE DOES:
-------------------
Memory is free text injected into every model call. It comes from two
markdown files:

    <workdir>/AGENTS.md          project memory, shared with the repo
    ~/.conductor/AGENTS.md       user memory, follows you across projects

A user message starting with '#' is a memory message: instead of being
sent to the model, it is appended to one of these files as a "- ..." line.

COMBINING:
---------
    project only  -> "project"
    user only     -> "user"
    both          -> "project\\n\\nuser"
    neither       -> ""

A file holding only whitespace counts as empty.
"""

import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

PROJECT_MEMORY_FILE = "AGENTS.md"
DEFAULT_USER_MEMORY_PATH = Path.home() / ".conductor" / "AGENTS.md"

PROJECT_MEMORY_HEADER = (
    "# Memory\n\n"
    "This is the assistant's memory file, recording important information and context.\n\n"
)
USER_MEMORY_HEADER = (
    "# User Memory\n\n"
    "This is the user-level memory file, recording important information and context across projects.\n\n"
)


def combine_memory(project: str, user: str) -> str:
    """Join project and user memory with a blank line, skipping empty sides."""
    parts = [text for text in (project, user) if text and text.strip()]
    return "\n\n".join(parts)


def _read(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ""
    except OSError as e:
        logger.warning("Could not read memory file %s: %s", path, e)
        return ""


def read_project_memory(workdir: Path, filename: str = PROJECT_MEMORY_FILE) -> str:
    return _read(Path(workdir) / filename)


def read_user_memory(path: Optional[Path] = None) -> str:
    return _read(Path(path or DEFAULT_USER_MEMORY_PATH).expanduser())


def get_combined_memory(
    workdir: Path,
    user_memory_path: Optional[Path] = None,
    project_filename: str = PROJECT_MEMORY_FILE,
) -> str:
    """Read both memory files and combine them."""
    return combine_memory(
        read_project_memory(workdir, project_filename),
        read_user_memory(user_memory_path),
    )


def is_memory_message(text: str) -> bool:
    return text.strip().startswith("#")


def _append_entry(path: Path, text: str, header: str) -> Path:
    entry = f"- {text.strip()[1:].strip()}\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    existing = path.read_text(encoding="utf-8") if path.exists() else header
    if existing and not existing.endswith("\n"):
        existing += "\n"
    path.write_text(existing + entry, encoding="utf-8")
    logger.info("Added memory entry to %s", path)
    return path


def add_memory(text: str, workdir: Path, filename: str = PROJECT_MEMORY_FILE) -> Optional[Path]:
    """
    Append a '#' message to the project memory file.

    Args:
        text: The raw user message, starting with '#'
        workdir: Project directory holding the memory file
        filename: Memory file name inside workdir

    Returns:
        Path written, or None if `text` is not a memory message
    """
    if not is_memory_message(text):
        return None
    return _append_entry(Path(workdir) / filename, text, PROJECT_MEMORY_HEADER)


def add_user_memory(text: str, path: Optional[Path] = None) -> Optional[Path]:
    """Append a '#' message to the user memory file."""
    if not is_memory_message(text):
        return None
    target = Path(path or DEFAULT_USER_MEMORY_PATH).expanduser()
    return _append_entry(target, text, USER_MEMORY_HEADER)
