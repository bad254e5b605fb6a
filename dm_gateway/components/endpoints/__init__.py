"""
WebSocket endpoints.
"""

from dm_gateway.components.endpoints.base import WebSocketEndpointBase
from dm_gateway.components.endpoints.handlers import DirectMessageEndpoint

__all__ = ["WebSocketEndpointBase", "DirectMessageEndpoint"]
