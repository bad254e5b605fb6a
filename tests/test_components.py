"""
Tests for small gateway components: log sanitizing, origin checks, outboxes,
dead connection tracking, metrics and logging setup.
"""

import json
import logging
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from dm_gateway.components.core.constants import validate_websocket_origin
from dm_gateway.components.core.context import ConnectionContext, sanitize_log_data
from dm_gateway.components.metrics.collector import MetricsCollector
from dm_gateway.core.connection.broadcaster import ConnectionBroadcaster
from dm_gateway.core.connection.cleanup import ConnectionCleanup
from dm_gateway.components.connection.locks import LockManager
from shared.config.logging import DevelopmentFormatter, StructuredFormatter, mask_user_id
from shared.infrastructure.correlation import CorrelationIdFilter, bind_connection_id
from tests.conftest import FakeTransport


class TestSanitizeLogData:

    def test_strips_control_and_bidi_characters(self):
        assert sanitize_log_data("a\x00b\nc\u202ed") == "abcd"

    def test_escapes_quotes(self):
        assert sanitize_log_data('say "hi"\\') == 'say \\"hi\\"\\\\'

    def test_truncates(self):
        assert sanitize_log_data("x" * 150, max_length=10) == "x" * 10 + "..."

    def test_non_strings(self):
        assert sanitize_log_data(None) == "None"


class TestConnectionContext:

    def test_identifier_masks_user(self):
        ctx = ConnectionContext(endpoint="/ws", connection_id="0123456789abcdef")
        assert ctx.identifier == "conn:01234567"
        ctx.user_id = "user-123456"
        assert ctx.identifier == "user:***3456"

    def test_log_fields(self):
        ctx = ConnectionContext(endpoint="/ws", connection_id="c1", origin="http://localhost:5173")
        assert ctx.log_fields(extra=1) == {
            "endpoint": "/ws",
            "identifier": "conn:c1",
            "origin": "http://localhost:5173",
            "extra": 1,
        }


class TestOriginValidation:

    def test_allowed_origin(self):
        config = SimpleNamespace(environment="production", allowed_origins="https://app.example")
        assert validate_websocket_origin("https://app.example", config)
        assert not validate_websocket_origin("https://evil.example", config)

    def test_missing_origin_only_in_development(self):
        assert validate_websocket_origin(None, SimpleNamespace(environment="development", allowed_origins=""))
        assert not validate_websocket_origin(None, SimpleNamespace(environment="production", allowed_origins=""))

    def test_default_origins(self):
        config = SimpleNamespace(environment="development", allowed_origins="")
        assert validate_websocket_origin("http://localhost:5173", config)


class TestBroadcaster:

    @pytest.mark.asyncio
    async def test_detach_is_idempotent(self):
        broadcaster = ConnectionBroadcaster(MetricsCollector(), AsyncMock())
        broadcaster.attach("c1", FakeTransport())
        assert broadcaster.outbox_count == 1

        await broadcaster.detach("c1")
        await broadcaster.detach("c1")

        assert broadcaster.outbox_count == 0
        assert not broadcaster.enqueue("c1", {"type": "x", "data": None})

    @pytest.mark.asyncio
    async def test_failed_send_reports_dead_connection(self):
        mark_dead = AsyncMock()
        metrics = MetricsCollector()
        broadcaster = ConnectionBroadcaster(metrics, mark_dead)
        broadcaster.attach("c1", FakeTransport(fail=True))

        assert broadcaster.enqueue("c1", {"type": "a", "data": 1})
        assert broadcaster.enqueue("c1", {"type": "b", "data": 2})
        await broadcaster.flush("c1")

        mark_dead.assert_awaited_once_with("c1")
        delivery = metrics.get_snapshot()["delivery"]
        assert delivery["deliveries_failed"] == 1
        assert delivery["deliveries_dropped"] == 1
        assert not broadcaster.enqueue("c1", {"type": "c", "data": 3})
        await broadcaster.stop(timeout=1.0)


class TestConnectionCleanup:

    @pytest.mark.asyncio
    async def test_dead_set_bounded_and_swept(self):
        disconnect = AsyncMock()
        metrics = MetricsCollector()
        cleanup = ConnectionCleanup(
            LockManager(), MagicMock(), metrics, disconnect, max_dead_connections=2
        )

        for cid in ("c1", "c2", "c2", "c3"):
            await cleanup.mark_dead(cid)

        assert cleanup.dead_connections_count == 2
        assert await cleanup.cleanup_dead_connections() == 2
        assert [call.args[0] for call in disconnect.await_args_list] == ["c2", "c3"]
        assert await cleanup.cleanup_dead_connections() == 0
        assert metrics.get_snapshot()["dead_connections_cleaned"] == 2

    @pytest.mark.asyncio
    async def test_cleanup_locks_uses_online_users(self):
        locks = LockManager()
        await locks.get_user_lock("alice")
        await locks.get_user_lock("bob")
        registry = MagicMock()
        registry.online_user_ids.return_value = {"alice"}
        metrics = MetricsCollector()
        cleanup = ConnectionCleanup(locks, registry, metrics, AsyncMock())

        assert await cleanup.cleanup_locks() == 1
        assert metrics.get_snapshot()["locks_cleaned"] == 1


class TestLogging:

    def test_mask_user_id(self):
        assert mask_user_id(None) == "<no-user>"
        assert mask_user_id("abc") == "***"
        assert mask_user_id("64f0c2a1") == "***c2a1"

    def test_structured_logger_accepts_fields(self):
        logger = logging.getLogger("dm_gateway.tests.structured")
        record_holder = []

        class Capture(logging.Handler):
            def emit(self, record):
                record_holder.append(record)

        handler = Capture()
        handler.addFilter(CorrelationIdFilter())
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        try:
            with bind_connection_id("conn-1234"):
                logger.info("Presence changed", user_id="***c2a1", online=True)
        finally:
            logger.removeHandler(handler)

        record = record_holder[0]
        assert record.extra_data == {"user_id": "***c2a1", "online": True}
        assert record.connection_id == "conn-1234"

        payload = json.loads(StructuredFormatter().format(record))
        assert payload["message"] == "Presence changed"
        assert payload["connection_id"] == "conn-1234"
        assert payload["data"] == {"user_id": "***c2a1", "online": True}

    def test_development_formatter_line(self):
        logger = logging.getLogger("dm_gateway.tests.development")
        records = []

        class Capture(logging.Handler):
            def emit(self, record):
                records.append(record)

        handler = Capture()
        handler.addFilter(CorrelationIdFilter())
        logger.addHandler(handler)
        logger.setLevel(logging.DEBUG)
        try:
            logger.info("No connection bound")
            with bind_connection_id("0123456789abcdef"):
                try:
                    raise ConnectionError("socket closed")
                except ConnectionError:
                    logger.warning("Send failed", exc_info=True, attempt=2)
        finally:
            logger.removeHandler(handler)

        plain, failed = records
        assert plain.extra_data is None
        assert "]" not in DevelopmentFormatter().format(plain)

        line = DevelopmentFormatter().format(failed)
        assert "[01234567]" in line
        assert "dm_gateway.tests.development: Send failed attempt=2" in line
        assert "ConnectionError: socket closed" in line
