"""
Connection correlation for logging.

Every log record emitted while a WebSocket connection is being served is
stamped with that connection's id, so one client's session can be followed
across the registry, presence and delivery logs.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

# Context variable for the connection currently being served
connection_id_var: ContextVar[str] = ContextVar("connection_id", default="")


def get_connection_id() -> str:
    """Get the connection id bound to the current context."""
    return connection_id_var.get()


@contextmanager
def bind_connection_id(connection_id: str) -> Iterator[None]:
    """
    Bind a connection id to the current context for the duration of the block.

    Usage:
        with bind_connection_id(connection.connection_id):
            await endpoint.serve()
    """
    token = connection_id_var.set(connection_id)
    try:
        yield
    finally:
        connection_id_var.reset(token)


class CorrelationIdFilter(logging.Filter):
    """
    Logging filter that adds connection_id to log records.

    Usage:
        handler = logging.StreamHandler()
        handler.addFilter(CorrelationIdFilter())
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.connection_id = connection_id_var.get() or "-"
        return True
