"""
Logging setup for the wizard.

The TUI owns the terminal, so records normally go to a log file inside the
workspace. Without a log file they are rendered on stderr by rich.
"""

import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        level: level name, e.g. ``"DEBUG"``
        log_file: path of the log file; created with its parent directory

    Returns:
        the ``yara_wizard`` logger
    """
    numeric = getattr(logging, str(level).upper(), logging.INFO)

    handlers: list[logging.Handler] = []
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        handlers.append(file_handler)
    else:
        handlers.append(RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False))

    logging.basicConfig(level=numeric, format="%(message)s", handlers=handlers, force=True)

    logger = logging.getLogger("yara_wizard")
    logger.setLevel(numeric)
    return logger
