"""
WebSocket Gateway Constants.

Centralized constants with documentation explaining each value.
"""

import logging
from enum import IntEnum
from typing import Final

__all__ = [
    "WSCloseCode",
    "WSConstants",
    "ClientMessageType",
    "MSG_PING_PLAIN",
    "MSG_PING_JSON",
    "MSG_PONG_JSON",
    "DEFAULT_ALLOWED_ORIGINS",
    "validate_websocket_origin",
]

logger = logging.getLogger(__name__)


class WSCloseCode(IntEnum):
    """
    WebSocket close codes used by the gateway.

    Standard codes (1000-1999) from RFC 6455.
    Custom codes (4000-4999) for application-specific errors.
    """

    # Standard codes (RFC 6455)
    NORMAL = 1000  # Normal closure
    GOING_AWAY = 1001  # Server shutting down or client navigating away
    POLICY_VIOLATION = 1008  # Generic policy violation
    MESSAGE_TOO_BIG = 1009  # Message too large to process
    SERVER_ERROR = 1011  # Unexpected server error
    SERVER_OVERLOADED = 1013  # Server overloaded, try again later

    # Custom application codes (4000-4999)
    AUTH_FAILED = 4001  # Token validation failed or expired
    FORBIDDEN = 4003  # Origin not allowed


class ClientMessageType:
    """Message types a client may send (the "type" field of its JSON frames)."""

    ONLINE = "online"
    OFFLINE = "offline"
    JOIN_CHANNEL = "joinChannel"
    LEAVE_CHANNEL = "leaveChannel"
    SEND_MESSAGE = "sendMessage"


class WSConstants:
    """
    WebSocket Gateway operational constants.

    Values that operators tune live in shared.config.settings; these are
    internal implementation details.
    """

    # ==========================================================================
    # Lock Management Constants
    # ==========================================================================

    # MAX_CACHED_LOCKS: 5000
    # One lock per user with at least one connection. A gateway instance
    # serves a few thousand users; each lock is ~200 bytes.
    MAX_CACHED_LOCKS: Final[int] = 5000

    # LOCK_CLEANUP_THRESHOLD: 80% of MAX_CACHED_LOCKS
    # Start cleanup before hitting the limit.
    LOCK_CLEANUP_THRESHOLD: Final[int] = 4000

    # LOCK_CLEANUP_HYSTERESIS_RATIO: 0.8
    # Cleanup shrinks the cache to 80% of the threshold so the next cleanup
    # is not triggered by the very next new user.
    LOCK_CLEANUP_HYSTERESIS_RATIO: Final[float] = 0.8

    # ==========================================================================
    # Cleanup Constants
    # ==========================================================================

    # DEAD_CONNECTION_SWEEP_INTERVAL: 30 seconds
    # Connections whose transport failed during a send are disconnected on
    # the next sweep.
    DEAD_CONNECTION_SWEEP_INTERVAL: Final[float] = 30.0

    # MAX_DEAD_CONNECTIONS: 1000
    # Upper bound on connections queued for cleanup between sweeps.
    MAX_DEAD_CONNECTIONS: Final[int] = 1000

    # LOCK_CLEANUP_CYCLE: every 10th sweep (~5 minutes)
    LOCK_CLEANUP_CYCLE: Final[int] = 10

    # ==========================================================================
    # Delivery Constants
    # ==========================================================================

    # OUTBOX_DRAIN_TIMEOUT: 5 seconds
    # Time given to per-connection outboxes to flush during shutdown.
    OUTBOX_DRAIN_TIMEOUT: Final[float] = 5.0

    # PRESENCE_DRAIN_TIMEOUT: 5 seconds
    # Time given to pending presence writes during shutdown.
    PRESENCE_DRAIN_TIMEOUT: Final[float] = 5.0

    # ==========================================================================
    # Bridge Constants
    # ==========================================================================

    # MAX_ROOMS_PER_EVENT: 100
    # A channel has at most a handful of members; a larger target list is a
    # malformed or hostile event.
    MAX_ROOMS_PER_EVENT: Final[int] = 100

    # MAX_ROOMS_PER_JOIN: 50
    # Rooms a client may join with a single joinChannel request.
    MAX_ROOMS_PER_JOIN: Final[int] = 50


# Heartbeat messages
MSG_PING_PLAIN: Final[str] = "ping"
MSG_PING_JSON: Final[str] = '{"type":"ping"}'
MSG_PONG_JSON: Final[str] = '{"type":"pong"}'

# Origins accepted when settings.allowed_origins is empty (development)
DEFAULT_ALLOWED_ORIGINS: Final[tuple[str, ...]] = (
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:4173",
)


def validate_websocket_origin(origin: str | None, settings: object) -> bool:
    """
    Validate a WebSocket Origin header against the allowed origins.

    A missing Origin header is accepted only in development.

    Args:
        origin: The Origin header value, or None if not present.
        settings: Object with `environment` and `allowed_origins` attributes.
    """
    allowed_origins_str = getattr(settings, "allowed_origins", None)
    if allowed_origins_str:
        allowed = [o.strip() for o in allowed_origins_str.split(",") if o.strip()]
    else:
        allowed = list(DEFAULT_ALLOWED_ORIGINS)

    if not origin:
        if getattr(settings, "environment", "production") == "development":
            return True
        logger.warning("WebSocket connection rejected: missing Origin header")
        return False

    if origin in allowed:
        return True

    logger.warning(
        "WebSocket connection rejected: origin not in allowed list",
        allowed_count=len(allowed),
    )
    return False
