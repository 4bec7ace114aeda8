"""Logging setup shared by the HTTP entry points."""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_FILE_NAME = "resumable_chat.log"


def setup_logging(log_dir: str, level: int = logging.INFO) -> Path:
    """Configure console and rotating file logging once per process.

    Returns the path of the log file. Calling it again leaves existing
    handlers in place and only adjusts the level.
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = log_path / LOG_FILE_NAME

    root = logging.getLogger()
    root.setLevel(level)
    if getattr(root, "_resumable_chat_configured", False):
        return log_file

    formatter = logging.Formatter(LOG_FORMAT)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    file_handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)

    root.addHandler(console)
    root.addHandler(file_handler)
    root._resumable_chat_configured = True  # type: ignore[attr-defined]
    logging.getLogger(__name__).debug("Logging to %s", log_file)
    return log_file
