"""
Configures the service's logging.

Everything goes to the root logger, which writes to `latest.log` in the log
directory and to stderr. Each start archives the previous `latest.log` under
its modification time and prunes the oldest archives.
"""

import sys
import logging
from datetime import datetime
from pathlib import Path
from typing import List

from .constants import LOG_DIR

LOG_FORMAT = '%(asctime)s - %(levelname)-8s - %(name)-20s - %(message)s'
ACCESS_LOG_FORMAT = '%a "%r" %s %b %Tfs'

# Chatty below WARNING unless the service itself runs at DEBUG.
_QUIET_LOGGERS = ('asyncio',)


def _archived_logs(log_dir: Path) -> List[Path]:
    return sorted(path for path in log_dir.glob('*.log') if path.name != 'latest.log')


def rotate_logs(log_dir: Path, keep: int):
    """Archives `latest.log` and deletes all but the newest `keep` archives."""
    latest_log_path = log_dir / 'latest.log'
    if latest_log_path.exists():
        timestamp_str = datetime.fromtimestamp(latest_log_path.stat().st_mtime).strftime('%Y-%m-%d_%H-%M-%S')
        archive_log_path = log_dir / f"{timestamp_str}.log"
        suffix = 1
        while archive_log_path.exists():
            archive_log_path = log_dir / f"{timestamp_str}_{suffix}.log"
            suffix += 1
        try:
            latest_log_path.rename(archive_log_path)
        except OSError as e:
            print(f"Error rotating log file: {e}", file=sys.stderr)

    archives = _archived_logs(log_dir)
    for stale in archives[:max(0, len(archives) - keep)]:
        try:
            stale.unlink()
        except OSError as e:
            print(f"Error removing old log file {stale}: {e}", file=sys.stderr)


def setup_logging(log_level_str: str = 'INFO', log_dir: Path = LOG_DIR, keep_archives: int = 10) -> Path:
    """
    Configures the root logger for file and console logging.

    Args:
        log_level_str: The minimum level for both handlers (e.g., 'INFO').
        log_dir: The directory holding `latest.log` and its archives.
        keep_archives: How many archived logs to keep.

    Returns:
        The path of the log file now being written.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    rotate_logs(log_dir, keep_archives)
    latest_log_path = log_dir / 'latest.log'

    log_level = getattr(logging, log_level_str.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    log_formatter = logging.Formatter(LOG_FORMAT)
    for handler in (logging.FileHandler(str(latest_log_path), encoding='utf-8'), logging.StreamHandler(sys.stderr)):
        handler.setLevel(log_level)
        handler.setFormatter(log_formatter)
        root_logger.addHandler(handler)

    quiet_level = logging.DEBUG if log_level <= logging.DEBUG else logging.WARNING
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)

    logging.info("--- Logging initialized ---")
    logging.debug(f"Log level set to: {logging.getLevelName(log_level)}")
    return latest_log_path
