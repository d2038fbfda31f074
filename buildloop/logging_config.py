# buildloop/logging_config.py
"""
Stderr-only logging configuration.

The MCP server speaks over stdio, so ALL logging must go to stderr. Server
logs are JSON lines; the interactive CLI gets a plain formatter instead.

Job-scoped log calls pass context through ``extra``, e.g.::

    logger.error("Job failed", extra={"job_id": job.job_id, "queue": "build"})

and the JSON formatter lifts those keys onto the top-level object.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

# Record attributes copied into JSON output when a log call supplies them
CONTEXT_FIELDS = ("job_id", "project_id", "queue", "worker")

# Chatty libraries that get their own level
_QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "aiosqlite": logging.WARNING,
}


class JsonFormatter(logging.Formatter):
    """One JSON object per record: ts, level, logger, msg, context, exc."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for field in CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        if record.exc_info:
            log_data["exc"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def resolve_level(level: int | str | None = None) -> int:
    """
    Turn a level name or number into a logging level.

    Falls back to the BUILDLOOP_LOG_LEVEL environment variable, then INFO.
    Unknown names resolve to INFO rather than failing startup.
    """
    if level is None:
        level = os.environ.get("BUILDLOOP_LOG_LEVEL", "INFO")
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def _install(handler: logging.Handler, level: int) -> None:
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    for name, quiet_level in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(max(quiet_level, level))


def configure_logging(level: int | str | None = None) -> None:
    """
    Configure JSON logging to stderr only.

    Must run before the server module creates its loggers. Clears existing
    handlers so nothing ends up on stdout. fastmcp installs its own handler,
    so it is pointed at ours and stops propagating to avoid double lines.
    """
    resolved = resolve_level(level)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    _install(handler, resolved)

    fastmcp_logger = logging.getLogger("fastmcp")
    fastmcp_logger.handlers.clear()
    fastmcp_logger.addHandler(handler)
    fastmcp_logger.setLevel(resolved)
    fastmcp_logger.propagate = False


def configure_cli_logging(level: int | str | None = None) -> None:
    """Human-readable stderr logging for the interactive CLI commands."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter("%(asctime)s  %(levelname)-7s  %(message)s", datefmt="%H:%M:%S")
    )
    _install(handler, resolve_level(level))
