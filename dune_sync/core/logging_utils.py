"""Logging utilities for dune-sync.

Dual-channel logging:
- Console handler: INFO/WARNING/ERROR to stderr (human-friendly).
- File handler: level driven by environment (.env), written under ./logs by default,
  with filename pattern: <action>-YYYY-MM-DD.log.

API keys are masked in both channels. Calling `setup_logging(...)` multiple
times reconfigures the root logger cleanly without duplicating handlers.
"""

from __future__ import annotations

import logging
import os
import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from dotenv import find_dotenv, load_dotenv

DEF_CONSOLE_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"
DEF_FILE_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s "
    "[%(filename)s:%(lineno)d %(funcName)s] - %(message)s"
)


class MaskSecretsFilter(logging.Filter):
    """Redact API keys and bearer tokens from log records."""

    _patterns = [
        re.compile(r"(X-Dune-API-Key[\"']?\s*[=:]\s*[\"']?)([A-Za-z0-9._-]+)", re.IGNORECASE),
        re.compile(r"(Authorization:\s*Bearer\s+)([A-Za-z0-9._-]+)", re.IGNORECASE),
        re.compile(r"(api[_-]?key\s*[=:]\s*)([A-Za-z0-9._-]+)", re.IGNORECASE),
    ]

    @staticmethod
    def _mask(text: str) -> str:
        masked = text
        for pat in MaskSecretsFilter._patterns:
            masked = pat.sub(r"\1***REDACTED***", masked)
        return masked

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._mask(str(v)) for k, v in record.args.items()}
            else:
                record.args = tuple(self._mask(a) if isinstance(a, str) else a for a in record.args)
        if isinstance(record.msg, str):
            record.msg = self._mask(record.msg)
        return True


def _load_env() -> None:
    env_path = find_dotenv(usecwd=True) or ""
    load_dotenv(env_path, override=False)


def _resolve_file_level() -> int:
    """Level for the *file* handler.

    Precedence:
        1) DUNE_SYNC_LOG_FILE_LEVEL
        2) DUNE_SYNC_LOG_LEVEL
        3) DEBUG
    """
    lvl_name = (
        os.getenv("DUNE_SYNC_LOG_FILE_LEVEL")
        or os.getenv("DUNE_SYNC_LOG_LEVEL")
        or "DEBUG"
    ).upper()
    return getattr(logging, lvl_name, logging.DEBUG)


def _ensure_logs_dir() -> Path:
    p = Path(os.getenv("DUNE_SYNC_LOG_DIR") or "./logs")
    p.mkdir(parents=True, exist_ok=True)
    return p


def _build_log_filename(action: str) -> str:
    return f"{action}-{datetime.now().strftime('%Y-%m-%d')}.log"


def setup_logging(level: Optional[str] = None, *, action: Optional[str] = None) -> None:
    """Configure the root logger with console + optional file handlers.

    Args:
        level: Console level name; defaults to ``INFO``.
        action: CLI subcommand (e.g. ``apply``). When given, a file handler is
            added under ``DUNE_SYNC_LOG_DIR``.
    """
    _load_env()
    logging.captureWarnings(True)

    console_level = getattr(logging, (level or "INFO").upper(), logging.INFO)
    file_level = _resolve_file_level()
    mask = MaskSecretsFilter()

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
        h.close()

    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter(DEF_CONSOLE_FORMAT))
    console_handler.addFilter(mask)
    root.addHandler(console_handler)

    if action:
        logfile = _ensure_logs_dir() / _build_log_filename(action)
        file_handler = logging.FileHandler(logfile, encoding="utf-8")
        file_handler.setLevel(file_level)
        file_handler.setFormatter(logging.Formatter(DEF_FILE_FORMAT))
        file_handler.addFilter(mask)
        root.addHandler(file_handler)
        root.setLevel(min(console_level, file_level))
    else:
        root.setLevel(console_level)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a child logger with the given name."""
    return logging.getLogger(name or "dune_sync")
