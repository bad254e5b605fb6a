"""
Connection context for logging.

Groups the metadata logged on every lifecycle line of a WebSocket connection.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, TYPE_CHECKING

from shared.config.logging import mask_user_id

if TYPE_CHECKING:
    from fastapi import WebSocket


# Control characters and Unicode direction overrides stripped from log data
_CONTROL_CHAR_PATTERN = re.compile(
    r'[\x00-\x1f\x7f-\x9f'  # ASCII control characters
    r'\u200b-\u200f'  # Zero-width and direction marks
    r'\u202a-\u202e'  # Bidirectional text formatting
    r'\u2066-\u2069'  # Isolate formatting characters
    r'\ufeff]'  # BOM
)


def sanitize_log_data(data: Any, max_length: int = 100) -> str:
    """
    Sanitize user-provided data before logging.

    Truncates first so the escaped output has a predictable length, then
    removes control characters and escapes JSON-dangerous characters.

    Args:
        data: Raw user data (non-strings are converted with str()).
        max_length: Maximum length to include in logs.

    Returns:
        Sanitized, truncated string safe for structured logging.
    """
    if not isinstance(data, str):
        data = str(data)

    truncated = data[:max_length] if len(data) > max_length else data
    was_truncated = len(data) > max_length

    sanitized = _CONTROL_CHAR_PATTERN.sub('', truncated)

    # Replace backslashes first to avoid double-escaping
    sanitized = sanitized.replace('\\', '\\\\')
    sanitized = sanitized.replace('"', '\\"')

    if was_truncated:
        return sanitized + "..."
    return sanitized


@dataclass
class ConnectionContext:
    """
    Metadata for one WebSocket connection.

    Usage:
        ctx = ConnectionContext.from_websocket(websocket, "/ws", connection_id)
        logger.info("Connected", **ctx.log_fields())
    """

    endpoint: str
    connection_id: str
    origin: str | None = None
    user_id: str | None = None

    @classmethod
    def from_websocket(
        cls,
        websocket: "WebSocket",
        endpoint: str,
        connection_id: str,
    ) -> "ConnectionContext":
        """Create context from a WebSocket before authentication."""
        return cls(
            endpoint=endpoint,
            connection_id=connection_id,
            origin=websocket.headers.get("origin"),
        )

    @property
    def identifier(self) -> str:
        """Short identifier for log lines."""
        if self.user_id:
            return f"user:{mask_user_id(self.user_id)}"
        return f"conn:{self.connection_id[:8]}"

    def log_fields(self, **extra: Any) -> dict[str, Any]:
        """Fields to pass to the structured logger."""
        fields: dict[str, Any] = {
            "endpoint": self.endpoint,
            "identifier": self.identifier,
        }
        if self.origin:
            fields["origin"] = sanitize_log_data(self.origin)
        fields.update(extra)
        return fields
