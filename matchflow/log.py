"""Logging setup shared by the pipeline, its worker threads and the CLI.

Console output follows ``LOG_LEVEL``; a per-day file under ``logs/`` keeps
DEBUG detail unless ``MATCHFLOW_LOG_FILE=0``.
"""
from __future__ import annotations

import logging
import os
import sys
from datetime import datetime
from pathlib import Path

_LOG_DIR = Path(os.environ.get("MATCHFLOW_LOG_DIR") or Path(__file__).resolve().parent.parent / "logs")
_FORMAT = "%(asctime)s  %(levelname)-8s  [%(threadName)s]  %(name)s  %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"
# Client libraries that log every HTTP request at INFO.
_NOISY = ("urllib3", "httpx", "openai")
_configured = False


def get_logger(name: str) -> logging.Logger:
    """Named logger; the first call installs the root handlers."""
    global _configured
    if not _configured:
        _configure()
        _configured = True
    return logging.getLogger(name)


def _file_logging_enabled() -> bool:
    return os.environ.get("MATCHFLOW_LOG_FILE", "1").strip().lower() not in ("0", "false", "no")


def _configure() -> None:
    level = getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO)
    root = logging.getLogger()
    for name in _NOISY:
        logging.getLogger(name).setLevel(logging.WARNING)

    # Someone (pytest, an embedding app) already owns the handlers.
    if root.handlers:
        root.setLevel(level)
        return
    root.setLevel(logging.DEBUG if _file_logging_enabled() else level)

    formatter = logging.Formatter(_FORMAT, datefmt=_DATE_FMT)
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(formatter)
    root.addHandler(console)

    if not _file_logging_enabled():
        return
    log_file = _LOG_DIR / f"matchflow_{datetime.now().strftime('%Y-%m-%d')}.log"
    try:
        _LOG_DIR.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file, encoding="utf-8")
    except OSError as exc:
        logging.getLogger(__name__).warning("File logging disabled, cannot open %s: %s", log_file, exc)
        return
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(formatter)
    root.addHandler(fh)
