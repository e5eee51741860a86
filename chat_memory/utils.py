"""Logging helpers shared by the server and the library modules."""

from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_FILENAME = "chat_memory.log"


def setup_logging(log_dir: str, level: int = logging.INFO) -> Path:
    """Configure console and file logging on the root logger.

    Safe to call more than once: handlers are only added the first time a
    given log file is configured.  Returns the path of the log file.
    """
    directory = Path(log_dir)
    directory.mkdir(parents=True, exist_ok=True)
    log_path = (directory / LOG_FILENAME).resolve()

    root = logging.getLogger()
    root.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT)

    has_file = any(
        isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == log_path
        for handler in root.handlers
    )
    if not has_file:
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    has_console = any(
        type(handler) is logging.StreamHandler for handler in root.handlers
    )
    if not has_console:
        console = logging.StreamHandler()
        console.setFormatter(formatter)
        root.addHandler(console)

    logging.getLogger(__name__).debug("Logging to %s", log_path)
    return log_path
