"""
Core components: constants and connection context.
"""

from dm_gateway.components.core.constants import (
    WSCloseCode,
    WSConstants,
    ClientMessageType,
    MSG_PING_PLAIN,
    MSG_PING_JSON,
    MSG_PONG_JSON,
    DEFAULT_ALLOWED_ORIGINS,
    validate_websocket_origin,
)
from dm_gateway.components.core.context import ConnectionContext, sanitize_log_data

__all__ = [
    "WSCloseCode",
    "WSConstants",
    "ClientMessageType",
    "MSG_PING_PLAIN",
    "MSG_PING_JSON",
    "MSG_PONG_JSON",
    "DEFAULT_ALLOWED_ORIGINS",
    "validate_websocket_origin",
    "ConnectionContext",
    "sanitize_log_data",
]
