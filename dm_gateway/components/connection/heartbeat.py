"""
Heartbeat handling for the WebSocket endpoint.

Clients keep idle sockets alive by sending "ping" (plain text) or
{"type": "ping"}; the gateway answers {"type": "pong"}. Any received frame
resets the endpoint's receive timeout, so no per-connection timestamps are
tracked here.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from dm_gateway.components.core.constants import MSG_PING_PLAIN, MSG_PING_JSON, MSG_PONG_JSON

if TYPE_CHECKING:
    from fastapi import WebSocket

_heartbeat_logger = logging.getLogger(__name__)


def is_heartbeat(data: str) -> bool:
    return data == MSG_PING_PLAIN or data == MSG_PING_JSON


async def handle_heartbeat(ws: WebSocket, data: str) -> bool:
    """
    Respond to a ping with a pong.

    Only expected connection errors are swallowed: the receive loop notices a
    closed socket on its next read and runs cleanup.

    Returns:
        True if the message was a heartbeat and was handled.
    """
    if not is_heartbeat(data):
        return False
    try:
        await ws.send_text(MSG_PONG_JSON)
    except (ConnectionError, RuntimeError, OSError):
        pass
    except Exception as e:
        _heartbeat_logger.warning(
            "Unexpected error sending heartbeat response",
            error=type(e).__name__,
            message=str(e),
        )
    return True
