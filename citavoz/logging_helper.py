"""
Logging helper module for terminal-first logging.
All output goes to stdout with formatted prefixes, and also to a log file.

The log directory defaults to ./logs and can be moved with CITAVOZ_LOG_DIR.
The file is only created on the first write.
"""

import os
import sys
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional, TextIO

_lock = threading.Lock()
_log_file: Optional[TextIO] = None
_log_file_path: Optional[Path] = None


def _resolve_log_dir() -> Path:
    configured = os.environ.get("CITAVOZ_LOG_DIR")
    if configured:
        return Path(configured)
    return Path.cwd() / "logs"


def _open_log_file() -> Optional[TextIO]:
    global _log_file, _log_file_path
    if _log_file is not None:
        return _log_file

    log_dir = _resolve_log_dir()
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        _log_file_path = log_dir / f"citavoz_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
        _log_file = open(_log_file_path, 'a', encoding='utf-8')
    except OSError as err:
        # Terminal output still works without a file
        print(f"[WARN] Unable to open log file in {log_dir}: {err}", file=sys.stderr)
        _log_file = None
    return _log_file


def _log(message: str):
    """Write message to both stdout and log file."""
    with _lock:
        print(message)
        log_file = _open_log_file()
        if log_file is not None:
            log_file.write(message + '\n')
            log_file.flush()


class Log:
    """Prefixed terminal logging mirrored to the log file."""

    @staticmethod
    def section(title: str):
        """Blank line, then '===== title ====='."""
        _log("")
        _log(f"===== {title} =====")

    @staticmethod
    def info(message: str):
        _log(f"[INFO] {message}")

    @staticmethod
    def warn(message: str):
        _log(f"[WARN] {message}")

    @staticmethod
    def error(message: str):
        _log(f"[ERROR] {message}")

    @staticmethod
    def kv(pairs: dict):
        """
        One structured record per line: '[KV] stage=slots | slots=08:00,09:30'

        Args:
            pairs: Ordered field names and values; values are rendered with str()
        """
        _log("[KV] " + " | ".join(f"{key}={value}" for key, value in pairs.items()))

    @staticmethod
    def get_log_path() -> Optional[str]:
        """Path of the current log file, None until the first write."""
        return str(_log_file_path) if _log_file_path is not None else None
