"""
Direct-messaging WebSocket endpoint.

Client -> server frames are JSON objects with a "type" field:

    {"type": "online", "token": "<jwt>"}          authenticate
    {"type": "online", "userId": "<id>"}          authenticate (trusted mode only)
    {"type": "offline"}                           log out, keep the socket
    {"type": "joinChannel", "room": "<channelId>"} or {"rooms": [...]}
    {"type": "leaveChannel", "room": "<channelId>"}
    {"type": "sendMessage", "room": "<channelId>", "data": {...}}

Channel ids are mapped to channel rooms, so a client can never subscribe to
another user's personal room. Server -> client frames are
{"type": <event kind>, "data": <payload>}; protocol errors are answered with
{"type": "error", "data": {"message": ...}}.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from fastapi import WebSocket

from dm_gateway.components.core.constants import ClientMessageType, WSCloseCode, WSConstants
from dm_gateway.components.core.context import sanitize_log_data
from dm_gateway.components.endpoints.base import WebSocketEndpointBase
from shared.config.logging import mask_user_id
from shared.config.settings import settings
from shared.infrastructure.events.rooms import channel_room
from shared.security.auth import TokenError, user_id_from_claims, verify_jwt

if TYPE_CHECKING:
    from dm_gateway.connection_manager import ConnectionManager

logger = logging.getLogger(__name__)

ERROR_EVENT = "error"


class DirectMessageEndpoint(WebSocketEndpointBase):
    """
    WebSocket endpoint for direct-messaging clients.

    Features:
    - JWT authentication via the "online" message (or a trusted userId)
    - Channel join/leave
    - Relaying client messages to the other members viewing a channel
    """

    def __init__(
        self,
        websocket: WebSocket,
        manager: "ConnectionManager",
        trust_client_user_id: bool | None = None,
        **kwargs: Any,
    ):
        super().__init__(websocket, manager, endpoint_name="/ws", **kwargs)
        self.trust_client_user_id = (
            trust_client_user_id
            if trust_client_user_id is not None
            else settings.ws_trust_client_user_id
        )
        self._handlers = {
            ClientMessageType.ONLINE: self._handle_online,
            ClientMessageType.OFFLINE: self._handle_offline,
            ClientMessageType.JOIN_CHANNEL: self._handle_join,
            ClientMessageType.LEAVE_CHANNEL: self._handle_leave,
            ClientMessageType.SEND_MESSAGE: self._handle_send_message,
        }

    def send_error(self, message: str) -> None:
        self.manager.router.send_to_connection(self.connection_id, ERROR_EVENT, {"message": message})

    async def handle_message(self, data: str) -> None:
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Invalid JSON received", **self.log_fields(message=sanitize_log_data(data)))
            self.send_error("Invalid JSON")
            return

        if not isinstance(message, dict):
            self.send_error("Message must be a JSON object")
            return

        message_type = message.get("type")
        handler = self._handlers.get(message_type) if isinstance(message_type, str) else None
        if handler is None:
            logger.debug(
                "Unknown message type received",
                **self.log_fields(message_type=sanitize_log_data(message_type)),
            )
            self.send_error("Unknown message type")
            return

        await handler(message)

    def _require_user(self) -> str | None:
        user_id = self.manager.registry.user_of(self.connection_id)
        if user_id is None:
            self.send_error("Not authenticated")
        return user_id

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _handle_online(self, message: dict[str, Any]) -> None:
        user_id = await self._resolve_user(message)
        if user_id is None:
            return

        try:
            await self.manager.authenticate(self.connection_id, user_id)
        except ConnectionError as e:
            self.manager.metrics.increment_connection_rejected_limit()
            logger.warning(
                "Authentication rejected",
                **self.log_fields(user_id=mask_user_id(user_id), reason=str(e)),
            )
            self.send_error("Too many connections")
            return

        if self.context is not None:
            self.context.user_id = user_id

    async def _resolve_user(self, message: dict[str, Any]) -> str | None:
        """User id from the token, or from userId in trusted mode. Closes the socket on failure."""
        token = message.get("token")
        if isinstance(token, str) and token:
            try:
                return user_id_from_claims(verify_jwt(token))
            except TokenError as e:
                self.manager.metrics.increment_connection_rejected_auth()
                logger.warning("WebSocket token validation failed", **self.log_fields(error=str(e)))
                await self.close(WSCloseCode.AUTH_FAILED, "Authentication failed")
                return None

        user_id = message.get("userId")
        if self.trust_client_user_id and isinstance(user_id, str) and user_id.strip():
            return user_id.strip()

        self.manager.metrics.increment_connection_rejected_auth()
        logger.warning("WebSocket authentication missing credentials", **self.log_fields())
        await self.close(WSCloseCode.AUTH_FAILED, "Authentication required")
        return None

    async def _handle_offline(self, message: dict[str, Any]) -> None:
        await self.manager.logout(self.connection_id)
        if self.context is not None:
            self.context.user_id = None

    async def _handle_join(self, message: dict[str, Any]) -> None:
        if self._require_user() is None:
            return

        raw = message.get("rooms")
        if raw is None:
            raw = [message.get("room")]
        if not isinstance(raw, list) or len(raw) > WSConstants.MAX_ROOMS_PER_JOIN:
            self.send_error("Invalid rooms")
            return

        rooms = self._channel_rooms(raw)
        if rooms is None:
            self.send_error("Invalid room")
            return
        self.manager.join(self.connection_id, rooms)

    async def _handle_leave(self, message: dict[str, Any]) -> None:
        if self._require_user() is None:
            return
        rooms = self._channel_rooms([message.get("room")])
        if rooms is None:
            self.send_error("Invalid room")
            return
        self.manager.leave(self.connection_id, rooms[0])

    async def _handle_send_message(self, message: dict[str, Any]) -> None:
        if self._require_user() is None:
            return
        rooms = self._channel_rooms([message.get("room")])
        if rooms is None:
            self.send_error("Invalid room")
            return
        self.manager.relay(self.connection_id, rooms[0], message.get("data"))

    @staticmethod
    def _channel_rooms(channel_ids: list[Any]) -> list[str] | None:
        """Map client channel ids to channel rooms; None if any id is invalid."""
        try:
            return [channel_room(channel_id) for channel_id in channel_ids]
        except ValueError:
            return None
