"""Centralised logging configuration.

Each entry point calls configure() once at startup with its own log file:
app.py writes studio.log, scene_cli.py writes cli.log. All modules then use
logging.getLogger(__name__) normally.

Output:
  console        — LOG_LEVEL (INFO by default), compact single-line format
  $LOG_DIR/<file> — DEBUG level, full format, rotating (5 × 5 MB)
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Optional

DEFAULT_LOGS_DIR = Path(__file__).parent / "logs"

_CONSOLE_FMT = "%(asctime)s  %(levelname)-7s  %(name)s — %(message)s"
_FILE_FMT    = "%(asctime)s  %(levelname)-7s  %(name)-20s  %(filename)s:%(lineno)d — %(message)s"
_DATE_FMT    = "%Y-%m-%d %H:%M:%S"

# SDK and HTTP loggers log every request at INFO
_NOISY = ("urllib3", "httpx", "httpcore", "werkzeug", "google_genai", "google.genai")


def logs_dir() -> Path:
    return Path(os.environ.get("LOG_DIR") or DEFAULT_LOGS_DIR)


def configure(level: Optional[str] = None, filename: str = "studio.log") -> Optional[Path]:
    """Attach console + rotating file handlers to the root logger.

    Returns the log file path, or None when logging was already configured
    (a second entry point, or a test runner that owns the root logger).
    """
    root = logging.getLogger()
    if root.handlers:
        return None

    level = level or os.environ.get("LOG_LEVEL", "INFO")
    log_file = logs_dir() / filename
    log_file.parent.mkdir(parents=True, exist_ok=True)
    root.setLevel(logging.DEBUG)

    # ── Console ──
    ch = logging.StreamHandler()
    ch.setLevel(getattr(logging, level.upper(), logging.INFO))
    ch.setFormatter(logging.Formatter(_CONSOLE_FMT, datefmt=_DATE_FMT))
    root.addHandler(ch)

    # ── Rotating file ──
    fh = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=5 * 1024 * 1024,   # 5 MB
        backupCount=5,
        encoding="utf-8",
    )
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(_FILE_FMT, datefmt=_DATE_FMT))
    root.addHandler(fh)

    for noisy in _NOISY:
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return log_file
