"""
n8n Lifecycle Controller
Copyright (C) 2024 HOMESERVER LLC

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU General Public License as published by
the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU General Public License for more details.

You should have received a copy of the GNU General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import datetime
import logging
import os
import sys
from pathlib import Path
from typing import Optional

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

logger = logging.getLogger("n8n_lifecycle")


def log_message(message, level="INFO"):
    """
    Unified logger used throughout the controller and its helpers.
    Args:
        message (str): The message to log.
        level (str): Log level (e.g., 'INFO', 'ERROR').
    """
    if level == "ERROR":
        logger.error(message)
    elif level == "WARNING":
        logger.warning(message)
    elif level == "DEBUG":
        logger.debug(message)
    else:
        logger.info(message)


def get_timestamp(now: Optional[datetime.datetime] = None) -> str:
    """Return a sortable timestamp string (YYYYmmdd_HHMMSS)."""
    return (now or datetime.datetime.now()).strftime(TIMESTAMP_FORMAT)


def setup_global_logging(log_dir: Optional[str] = None, command: str = "lifecycle",
                         debug: bool = False) -> Optional[str]:
    """
    Log to stdout and, when a log directory is given, to a per-run log file.

    Returns:
        str: Path of the per-run log file, or None when only stdout is used
    """
    unified_format = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    console_handler.setFormatter(unified_format)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for h in list(root_logger.handlers):
        root_logger.removeHandler(h)
    root_logger.addHandler(console_handler)

    log_file = None
    if log_dir:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        log_file = os.path.join(log_dir, f"{command}_{get_timestamp()}.log")
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(unified_format)
        root_logger.addHandler(file_handler)

    log_message("=" * 80)
    log_message(f"N8N LIFECYCLE SESSION STARTED ({command})")
    log_message(f"Command: {' '.join(sys.argv)}")
    log_message(f"Working Directory: {os.getcwd()}")
    log_message(f"Python Version: {sys.version}")
    if log_file:
        log_message(f"Log File: {log_file}")
    log_message("=" * 80)
    return log_file
