"""
Structured logging for the gateway.

Loggers accept keyword fields (logger.info("User online", user_id=...)).
Production writes one JSON object per line; development writes a short
coloured line. Records carry the id of the WebSocket connection being
served when there is one (see shared.infrastructure.correlation).
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from shared.config.settings import settings

NO_CONNECTION = "-"


def _connection_of(record: logging.LogRecord) -> str | None:
    connection_id = getattr(record, "connection_id", None)
    if not connection_id or connection_id == NO_CONNECTION:
        return None
    return connection_id


class StructuredFormatter(logging.Formatter):
    """JSON lines for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        connection_id = _connection_of(record)
        if connection_id:
            entry["connection_id"] = connection_id
        fields = getattr(record, "extra_data", None)
        if fields:
            entry["data"] = fields
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        if settings.debug:
            entry["source"] = f"{record.filename}:{record.lineno}"
        return json.dumps(entry, default=str)


class DevelopmentFormatter(logging.Formatter):
    """One readable line per record: time, level, connection, logger, message, fields."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "\033[32m")
        parts = [
            f"{color}{datetime.now():%H:%M:%S} {record.levelname:<7}{self.RESET}",
        ]
        connection_id = _connection_of(record)
        if connection_id:
            parts.append(f"[{connection_id[:8]}]")
        parts.append(f"{record.name}: {record.getMessage()}")

        fields = getattr(record, "extra_data", None)
        if fields:
            parts.append(" ".join(f"{key}={value}" for key, value in fields.items()))

        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class StructuredLogger(logging.Logger):
    """Logger whose level methods take arbitrary keyword fields, stored as record.extra_data."""

    def _log(  # type: ignore[override]
        self,
        level: int,
        msg: object,
        args: Any,
        exc_info: Any = None,
        extra: dict | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **fields: Any,
    ) -> None:
        extra = dict(extra or {})
        extra["extra_data"] = fields or None
        super()._log(
            level, msg, args,
            exc_info=exc_info, extra=extra, stack_info=stack_info, stacklevel=stacklevel,
        )


logging.setLoggerClass(StructuredLogger)


def setup_logging() -> None:
    """Install the gateway's root handler. Called once from the app lifespan."""
    from shared.infrastructure.correlation import CorrelationIdFilter

    level = logging.DEBUG if settings.debug else logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(CorrelationIdFilter())
    handler.setFormatter(
        StructuredFormatter() if settings.environment == "production" else DevelopmentFormatter()
    )

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    # Per-frame and per-request noise
    for name in ("uvicorn.access", "websockets", "redis"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)  # type: ignore[return-value]


def mask_user_id(user_id: str | None) -> str:
    """Show only the last 4 characters of a user id."""
    if not user_id:
        return "<no-user>"
    if len(user_id) <= 4:
        return "***"
    return f"***{user_id[-4:]}"


gateway_logger = get_logger("dm_gateway")
