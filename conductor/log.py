"""
Logging setup for conductor.

Library modules only ever call logging.getLogger(__name__). A host
application (or the bundled CLI) calls configure_logging() once to decide
where records go. Console output goes to stderr through rich so it never
mixes with anything the host prints on stdout.
"""

import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the `conductor` logger.

    Args:
        level: Level name for the console handler (DEBUG, INFO, ...)
        log_file: Optional path; when set, DEBUG and above are also written there

    Returns:
        The configured package logger
    """
    logger = logging.getLogger("conductor")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    console_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.addHandler(console_handler)

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)

    return logger
