"""
Realtime gateway application.

Serves the direct-messaging WebSocket at /ws, forwards write-path events from
Redis (or POST /internal/events) to connected clients, and keeps presence in
the user directory up to date.
"""

from __future__ import annotations

import asyncio
import hmac
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI, Header, HTTPException, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from shared.config.settings import settings
from shared.config.logging import setup_logging, gateway_logger as logger
from shared.infrastructure.events import close_redis_pool
from dm_gateway.connection_manager import ConnectionManager
from dm_gateway.redis_subscriber import run_subscriber
from dm_gateway.components.core.constants import WSConstants, DEFAULT_ALLOWED_ORIGINS
from dm_gateway.components.endpoints.handlers import DirectMessageEndpoint
from dm_gateway.components.events.types import DomainEvent

VERSION = "0.1.0"


# =============================================================================
# Background tasks
# =============================================================================


async def start_connection_sweep(manager: ConnectionManager) -> None:
    """
    Periodically disconnect dead connections and evict stale locks.

    Dead connections are the ones whose transport failed during a send.
    """
    cycle = 0
    while True:
        try:
            await asyncio.sleep(WSConstants.DEAD_CONNECTION_SWEEP_INTERVAL)
            cycle += 1

            await manager.cleanup_dead_connections()

            if cycle % WSConstants.LOCK_CLEANUP_CYCLE == 0:
                await manager.cleanup_locks()

        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error("Error in connection sweep", error=str(e), exc_info=True)


async def start_redis_subscriber(manager: ConnectionManager) -> None:
    """Run the Redis bridge until cancelled; a fatal bridge error is logged, not raised."""
    try:
        await run_subscriber(manager)
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.error("Redis subscriber error", error=str(e), exc_info=True)


async def _cancel(task: asyncio.Task | None) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


# =============================================================================
# Application factory
# =============================================================================


def _allowed_origins() -> list[str]:
    if settings.allowed_origins:
        return [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
    return list(DEFAULT_ALLOWED_ORIGINS) + [
        origin.replace("http://", "https://") for origin in DEFAULT_ALLOWED_ORIGINS
    ]


def create_app(
    manager: ConnectionManager | None = None,
    *,
    start_background_tasks: bool = True,
) -> FastAPI:
    """
    Build the gateway application.

    Args:
        manager: Connection manager to serve (a SQL-backed one by default).
        start_background_tasks: Start the dead-connection sweep and, when
            settings.redis_events_enabled, the Redis bridge.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        errors = settings.validate_production_secrets()
        if errors:
            for error in errors:
                logger.error("Configuration error", error=error)
            raise RuntimeError("Refusing to start with insecure production settings")

        if app.state.manager is None:
            app.state.manager = ConnectionManager()
        gateway: ConnectionManager = app.state.manager

        logger.info(
            "Starting realtime gateway",
            port=settings.ws_gateway_port,
            env=settings.environment,
        )

        sweep_task = None
        subscriber_task = None
        if start_background_tasks:
            sweep_task = asyncio.create_task(start_connection_sweep(gateway), name="connection_sweep")
            if settings.redis_events_enabled:
                subscriber_task = asyncio.create_task(
                    start_redis_subscriber(gateway), name="redis_subscriber"
                )

        yield

        logger.info("Shutting down realtime gateway")
        await _cancel(subscriber_task)
        await _cancel(sweep_task)
        await gateway.shutdown()

        if subscriber_task is not None:
            await close_redis_pool()
            logger.info("Redis connection pool closed")

    app = FastAPI(
        title="Direct Messages Realtime Gateway",
        description="Presence and live updates for direct-messaging clients",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.manager = manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Internal-Token"],
    )

    @app.get("/ws/health")
    async def health_check(request: Request) -> dict[str, Any]:
        """Basic health check with connection statistics."""
        gateway: ConnectionManager | None = request.app.state.manager
        try:
            stats = gateway.get_stats() if gateway is not None else {}
        except Exception as e:
            logger.warning("Failed to get stats in health check", error=str(e))
            stats = {"error": "stats_unavailable"}
        return {
            "status": "healthy",
            "service": "dm-gateway",
            "version": VERSION,
            "environment": settings.environment,
            **stats,
        }

    @app.post("/internal/events")
    async def publish_internal_event(
        request: Request,
        event: dict[str, Any] = Body(...),
        x_internal_token: str | None = Header(default=None),
    ) -> dict[str, int]:
        """Publish a write-path event in process (same schema as the Redis bridge)."""
        if settings.internal_api_token and not hmac.compare_digest(
            x_internal_token or "", settings.internal_api_token
        ):
            raise HTTPException(status_code=401, detail="Invalid internal token")

        gateway: ConnectionManager = request.app.state.manager
        gateway.metrics.increment_bridge_received()
        try:
            domain_event = DomainEvent.from_dict(event)
        except ValueError as e:
            gateway.metrics.increment_bridge_invalid()
            raise HTTPException(status_code=422, detail=str(e)) from e

        return {"queued": gateway.publish_event(domain_event)}

    @app.websocket("/ws")
    async def direct_message_websocket(websocket: WebSocket) -> None:
        """
        Direct-messaging realtime connection.

        Authenticate by sending {"type": "online", "token": "<jwt>"}.
        """
        endpoint = DirectMessageEndpoint(websocket, websocket.app.state.manager)
        await endpoint.run()

    return app


app = create_app()


# =============================================================================
# Development entry point
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "dm_gateway.main:app",
        host="0.0.0.0",
        port=settings.ws_gateway_port,
        reload=settings.debug,
    )
