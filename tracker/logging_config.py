"""Logging setup for Chapterbell.

Two handlers hang off the root logger:
- `chapterbell.log` in DATA_DIR, rotated at 10MB with 5 backups, DEBUG and up,
  with the thread name so worker lanes can be told apart
- a Rich console handler at the requested level

`CHAPTERBELL_LOG_LEVEL` overrides the console level when no level is passed.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

LOG_FILE_NAME = "chapterbell.log"
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5
FILE_FORMAT = "%(asctime)s - %(levelname)-8s - %(threadName)s - %(name)s - %(message)s"

# Per-request chatter from HTTP clients and the ASGI server.
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")

_logging_initialized = False


def _log_dir() -> Path:
    # Mirrors config.DATA_DIR; config imports this module, so it cannot be imported here.
    env = os.environ.get("DATA_DIR")
    if env:
        return Path(env)
    return Path(__file__).resolve().parents[1]


def _file_handler(log_dir: Path) -> RotatingFileHandler:
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / LOG_FILE_NAME,
        maxBytes=LOG_MAX_BYTES,
        backupCount=LOG_BACKUPS,
        encoding="utf-8",
    )
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def _console_handler(level: int) -> RichHandler:
    console = Console(theme=Theme({"logging.level.info": "bold cyan"}))
    handler = RichHandler(
        console=console,
        rich_tracebacks=True,
        show_time=False,
        show_path=False,
    )
    handler.setLevel(level)
    return handler


def setup_logging(log_level: Optional[str] = None) -> None:
    """Install the file and console handlers once per process.

    Args:
        log_level: Console level name (DEBUG, INFO, WARNING, ERROR). Falls back
            to $CHAPTERBELL_LOG_LEVEL, then INFO.
    """
    global _logging_initialized

    if _logging_initialized:
        return

    level_name = log_level or os.environ.get("CHAPTERBELL_LOG_LEVEL", "INFO")
    console_level = getattr(logging, level_name.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(_file_handler(_log_dir()))
    root_logger.addHandler(_console_handler(console_level))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    # Alembic installs its own handlers from alembic.ini; route it through ours.
    alembic_logger = logging.getLogger("alembic")
    alembic_logger.handlers = []
    alembic_logger.propagate = True

    _logging_initialized = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
