"""
Centralized logging configuration for botharbor.

Usage at project entry point (cli.py, runner_api.py):

    from botharbor.logging_setup import setup_logging
    setup_logging()

Modules log through ``logging.getLogger("botharbor.<area>")``; this attaches
a persistent file handler to the ``botharbor`` parent logger so every area
ends up in one file.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def default_log_dir() -> Path:
    return Path(os.environ.get("BOTHARBOR_LOG_DIR", str(Path(tempfile.gettempdir()) / "botharbor-logs")))


def setup_logging(
    *,
    log_dir: Optional[str | Path] = None,
    level: str = "INFO",
    console: bool = False,
) -> Path:
    """
    Initialize logging for botharbor.

    Args:
        log_dir: Directory for log files. Defaults to BOTHARBOR_LOG_DIR or <tmp>/botharbor-logs.
        level: Minimum log level.
        console: Also log to stderr.

    Returns:
        Path of the log file.
    """
    log_path = Path(log_dir) if log_dir else default_log_dir()
    log_path.mkdir(parents=True, exist_ok=True)
    log_file = str(log_path / "botharbor.log")

    root = logging.getLogger("botharbor")
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    # Idempotent: entry points may call this more than once
    if not any(
        isinstance(h, logging.FileHandler) and getattr(h, "baseFilename", None) == log_file
        for h in root.handlers
    ):
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(file_handler)

    if console and not any(type(h) is logging.StreamHandler for h in root.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(stream_handler)

    return Path(log_file)
