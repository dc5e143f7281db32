"""
observability/logger.py — meterd Structured Logger

Sets up structlog with:
  - JSON output to a rotating log file (optional, daemon only)
  - Human-readable console output on a TTY, JSON when piped (journald, CI)
  - Consistent fields on every log line: timestamp, level, logger, event
  - The websockets library's per-frame chatter capped at WARNING

Console output goes to stderr. stdout belongs to the command line tools,
whose output is parsed by scripts and tests.

Usage:
    from meterd.observability.logger import get_logger, setup_logging
    setup_logging(level="INFO", log_dir="./data/logs")
    log = get_logger(__name__)
    log.info("scheduler.evaluated", active=3, inactive=1)
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Optional

import structlog

# Loggers that are far too verbose at INFO/DEBUG for a long-running daemon.
_QUIET_LOGGERS = [
    "websockets",
    "websockets.server",
    "websockets.client",
    "asyncio",
]


def _quiet_noisy_loggers() -> None:
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


# ─────────────────────────────────────────────────────────────────────────────
# Public API
# ─────────────────────────────────────────────────────────────────────────────


def setup_logging(
    level: str = "INFO",
    log_dir: str | Path | None = None,
    json_format: Optional[bool] = None,  # None = auto-detect from tty
    console_output: bool = True,
    max_bytes: int = 10 * 1024 * 1024,   # 10 MB
    backup_count: int = 5,
) -> None:
    """
    Configure structlog and stdlib logging. Call once at daemon startup.

    Args:
        level:          Log level string — DEBUG | INFO | WARNING | ERROR | CRITICAL
        log_dir:        Directory for rotating log files. None disables the file.
        json_format:    If True, console emits JSON. If False, coloured
                        human-readable output. If None, pretty on a TTY and
                        JSON otherwise.
        console_output: Whether to emit logs to stderr at all.
        max_bytes:      Max size of each log file before rotation.
        backup_count:   Number of rotated log files to keep.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    if json_format is None:
        json_format = not sys.stderr.isatty()

    # ── Shared structlog processors ───────────────────────────────────────────
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    handlers: list[logging.Handler] = []

    # ── File handler (always JSON) ────────────────────────────────────────────
    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_dir / "meterd.log",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(numeric_level)
        handlers.append(file_handler)

    # ── Console handler (JSON or pretty) ─────────────────────────────────────
    if console_output:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(numeric_level)
        handlers.append(console_handler)

    if not handlers:
        handlers.append(logging.NullHandler())

    # ── Configure stdlib logging (structlog routes through it) ────────────────
    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
        handlers=handlers,
        force=True,
    )
    _quiet_noisy_loggers()

    # ── Configure structlog ───────────────────────────────────────────────────
    if json_format:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors
        + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    # File always uses JSON regardless of console format
    file_formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=shared_processors,
    )

    for handler in handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            handler.setFormatter(file_formatter)
        else:
            handler.setFormatter(formatter)


def get_logger(name: str = "meterd", **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """
    Get a bound logger with optional initial context values.

    Args:
        name:           Logger name, typically __name__ of the calling module.
        **initial_values: Key-value pairs permanently bound to this logger instance.

    Example:
        log = get_logger(__name__, component="gateway")
        log.info("gateway.client_connected", client_id="c-1a2b")
    """
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger


def bind_client(client_id: str) -> None:
    """
    Bind the IPC client identifier to all subsequent log calls in this
    async context (one gateway connection handler and its children).
    """
    structlog.contextvars.bind_contextvars(client_id=client_id)


def clear_client() -> None:
    """Clear client context vars when a connection handler exits."""
    structlog.contextvars.clear_contextvars()
