"""
Structured logging configuration using structlog.

Events are rendered once by structlog and handed to stdlib logging, so the
console and the ``caller.jsonl`` file see the same lines (and uvicorn's
own records land in the same file).
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog

LOG_FILENAME = "caller.jsonl"

# Chatty libraries that log every request at INFO.
_QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite")


def setup_logging(log_dir: Path, json_logs: bool = True, level: int = logging.INFO) -> Path:
    """
    Configure structlog + stdlib logging and return the log file path.

    Parameters
    ----------
    log_dir : Path
        Directory for log files.
    json_logs : bool
        Render events as JSON. When False the console gets structlog's
        coloured dev renderer and nothing is written to disk.
    level : int
        Minimum level for both stdlib and structlog.
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILENAME

    # ── stdlib root logger ──────────────────────────────────────
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(console)

    if json_logs:
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(fh)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    # ── structlog pipeline ──────────────────────────────────────
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return log_file


def bind_request_context(**values: object) -> None:
    """Attach values (request id, operator...) to every event on this task."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**values)
