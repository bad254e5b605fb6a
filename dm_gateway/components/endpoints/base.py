"""
WebSocket Endpoint Base Class.

Owns the transport side of a connection: origin check, accept, the receive
loop with timeout and size limit, heartbeats, and guaranteed teardown.
Subclasses implement handle_message() for the application protocol.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from fastapi import WebSocket, WebSocketDisconnect

from dm_gateway.components.core.constants import WSCloseCode, validate_websocket_origin
from dm_gateway.components.connection.heartbeat import handle_heartbeat
from dm_gateway.components.core.context import ConnectionContext
from shared.config.settings import settings
from shared.infrastructure.correlation import bind_connection_id

if TYPE_CHECKING:
    from dm_gateway.connection_manager import ConnectionManager

logger = logging.getLogger(__name__)


class WebSocketEndpointBase(ABC):
    """
    Base class for WebSocket endpoints.

    Lifecycle handled here:
    1. Validate the Origin header (close 4003 if not allowed)
    2. Accept and register the connection with the ConnectionManager
    3. Receive loop: timeout, size limit, heartbeat, handle_message()
    4. Disconnect from the manager, whatever ended the loop

    Usage:
        endpoint = DirectMessageEndpoint(websocket, manager)
        await endpoint.run()
    """

    def __init__(
        self,
        websocket: WebSocket,
        manager: "ConnectionManager",
        endpoint_name: str,
        receive_timeout: float | None = None,
        max_message_size: int | None = None,
    ):
        self.websocket = websocket
        self.manager = manager
        self.endpoint_name = endpoint_name
        self.receive_timeout = receive_timeout if receive_timeout is not None else settings.ws_receive_timeout
        self.max_message_size = max_message_size if max_message_size is not None else settings.ws_max_message_size

        self.context: ConnectionContext | None = None
        self._is_running = False

    @property
    def connection_id(self) -> str:
        return self.context.connection_id if self.context else ""

    @abstractmethod
    async def handle_message(self, data: str) -> None:
        """Handle a non-heartbeat text frame."""

    def stop(self) -> None:
        """End the receive loop after the current message."""
        self._is_running = False

    async def close(self, code: int, reason: str) -> None:
        """Close the socket and end the receive loop."""
        self._is_running = False
        try:
            await self.websocket.close(code=code, reason=reason)
        except (ConnectionError, RuntimeError, OSError):
            pass

    async def run(self) -> None:
        """Run the connection until the client leaves or the server closes it."""
        if not validate_websocket_origin(self.websocket.headers.get("origin"), settings):
            await self.websocket.close(code=WSCloseCode.FORBIDDEN, reason="Origin not allowed")
            return

        await self.websocket.accept()

        try:
            connection = self.manager.connect(self.websocket)
        except ConnectionError as e:
            logger.info("Connection rejected", endpoint=self.endpoint_name, reason=str(e))
            await self.close(WSCloseCode.SERVER_OVERLOADED, str(e))
            return

        self.context = ConnectionContext.from_websocket(
            self.websocket, self.endpoint_name, connection.connection_id
        )

        with bind_connection_id(connection.connection_id):
            logger.info("WebSocket connected", **self.context.log_fields())
            self._is_running = True
            try:
                await self._message_loop()
            except WebSocketDisconnect as e:
                logger.info(
                    "WebSocket disconnected",
                    **self.context.log_fields(reason="client_disconnect", code=e.code),
                )
            except Exception as e:
                logger.error(
                    "Unexpected error in WebSocket loop",
                    **self.context.log_fields(error=str(e)),
                    exc_info=True,
                )
                await self.close(WSCloseCode.SERVER_ERROR, "Internal error")
            finally:
                self._is_running = False
                await self.manager.disconnect(connection.connection_id)

    async def _message_loop(self) -> None:
        while self._is_running:
            data = await self._receive_with_timeout()
            if data is None:
                logger.info(
                    "Connection timed out (no messages)",
                    **self.context.log_fields(timeout=self.receive_timeout),
                )
                self.manager.metrics.increment_connection_timeouts()
                await self.close(WSCloseCode.NORMAL, "Connection timeout")
                break

            if not await self.validate_message_size(data):
                break

            if await handle_heartbeat(self.websocket, data):
                continue

            await self.handle_message(data)

    async def _receive_with_timeout(self) -> str | None:
        """Receive a text frame, or None on timeout."""
        try:
            return await asyncio.wait_for(
                self.websocket.receive_text(),
                timeout=self.receive_timeout,
            )
        except asyncio.TimeoutError:
            return None

    async def validate_message_size(self, data: str) -> bool:
        """Close the socket if a frame exceeds the size limit."""
        if len(data) > self.max_message_size:
            logger.warning(
                "Message size exceeded limit",
                **self.context.log_fields(size=len(data), max_size=self.max_message_size),
            )
            await self.close(WSCloseCode.MESSAGE_TOO_BIG, "Message too large")
            return False
        return True

    def log_fields(self, **extra: Any) -> dict[str, Any]:
        return self.context.log_fields(**extra) if self.context else dict(extra)
