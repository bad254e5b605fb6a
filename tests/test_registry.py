"""
Tests for the connection registry.

Verifies:
- Presence edges (first/last connection) are reported exactly once
- Rebinding a connection leaves nothing behind under the old identity
- Per-user connection limit
- Unknown and repeated ids are no-ops
"""

import asyncio

import pytest

from dm_gateway.components.connection.locks import LockManager
from dm_gateway.components.connection.registry import ConnectionRegistry, ConnectionState
from dm_gateway.components.connection.rooms import RoomMembershipTable


@pytest.fixture
def rooms():
    return RoomMembershipTable()


@pytest.fixture
def registry(rooms):
    return ConnectionRegistry(rooms, LockManager(), max_connections_per_user=3)


class TestRegister:

    def test_register_is_idempotent(self, registry):
        first = registry.register("c1", object())
        again = registry.register("c1", object())
        assert first is again
        assert registry.count == 1
        assert first.state is ConnectionState.CONNECTED
        assert first.user_id is None

    def test_unknown_ids_are_noops(self, registry):
        assert registry.get("missing") is None
        assert registry.user_of("missing") is None
        assert registry.connections_of("nobody") == set()


class TestAuthenticate:

    @pytest.mark.asyncio
    async def test_first_connection_edge(self, registry, rooms):
        registry.register("c1", object())
        registry.register("c2", object())

        first = await registry.authenticate("c1", "alice")
        second = await registry.authenticate("c2", "alice")

        assert first.authenticated and first.first_connection
        assert second.authenticated and not second.first_connection
        assert registry.is_online("alice")
        assert rooms.subscribers_of("user:alice") == {"c1", "c2"}
        assert registry.get("c1").state is ConnectionState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_same_user_is_idempotent(self, registry):
        registry.register("c1", object())
        await registry.authenticate("c1", "alice")
        result = await registry.authenticate("c1", "alice")
        assert result.authenticated
        assert not result.first_connection
        assert len(registry.connections_of("alice")) == 1

    @pytest.mark.asyncio
    async def test_unknown_connection_not_authenticated(self, registry):
        result = await registry.authenticate("missing", "alice")
        assert not result.authenticated
        assert not registry.is_online("alice")

    @pytest.mark.asyncio
    async def test_rebind_purges_previous_identity(self, registry, rooms):
        registry.register("c1", object())
        await registry.authenticate("c1", "alice")
        rooms.join("c1", "channel:secret")

        result = await registry.authenticate("c1", "bob")

        assert result.previous_user_id == "alice"
        assert result.previous_last is True
        assert result.first_connection is True
        assert registry.connections_of("alice") == set()
        assert not registry.is_online("alice")
        assert rooms.rooms_of("c1") == {"user:bob"}
        assert rooms.subscribers_of("user:alice") == set()
        assert rooms.subscribers_of("channel:secret") == set()

    @pytest.mark.asyncio
    async def test_connection_limit(self, registry):
        for i in range(3):
            registry.register(f"c{i}", object())
            await registry.authenticate(f"c{i}", "alice")
        registry.register("c3", object())

        with pytest.raises(ConnectionError):
            await registry.authenticate("c3", "alice")

        assert registry.get("c3").user_id is None
        assert len(registry.connections_of("alice")) == 3

    @pytest.mark.asyncio
    async def test_concurrent_connects_yield_one_first_edge(self, registry):
        for i in range(3):
            registry.register(f"c{i}", object())

        results = await asyncio.gather(
            *(registry.authenticate(f"c{i}", "alice") for i in range(3))
        )

        assert sum(r.first_connection for r in results) == 1


class TestUnregister:

    @pytest.mark.asyncio
    async def test_last_connection_edge(self, registry):
        registry.register("c1", object())
        registry.register("c2", object())
        await registry.authenticate("c1", "alice")
        await registry.authenticate("c2", "alice")

        first = await registry.unregister("c1")
        second = await registry.unregister("c2")

        assert first.user_id == "alice" and not first.last_connection
        assert second.user_id == "alice" and second.last_connection
        assert not registry.is_online("alice")
        assert registry.count == 0

    @pytest.mark.asyncio
    async def test_double_unregister_is_noop(self, registry):
        connection = registry.register("c1", object())
        await registry.authenticate("c1", "alice")

        assert (await registry.unregister("c1")).last_connection
        again = await registry.unregister("c1")

        assert again.user_id is None
        assert not again.last_connection
        assert connection.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_unauthenticated_unregister(self, registry, rooms):
        registry.register("c1", object())
        result = await registry.unregister("c1")
        assert result.user_id is None
        assert registry.get("c1") is None

    @pytest.mark.asyncio
    async def test_concurrent_closes_yield_one_last_edge(self, registry):
        for i in range(4):
            registry.register(f"c{i}", object())
            await registry.authenticate(f"c{i}", "alice")

        results = await asyncio.gather(*(registry.unregister(f"c{i}") for i in range(4)))

        assert sum(r.last_connection for r in results) == 1


class TestDeauthenticate:

    @pytest.mark.asyncio
    async def test_deauthenticate_keeps_connection(self, registry, rooms):
        registry.register("c1", object())
        await registry.authenticate("c1", "alice")
        rooms.join("c1", "channel:a")

        result = await registry.deauthenticate("c1")

        assert result.user_id == "alice" and result.last_connection
        connection = registry.get("c1")
        assert connection is not None
        assert connection.state is ConnectionState.CONNECTED
        assert rooms.rooms_of("c1") == set()

    @pytest.mark.asyncio
    async def test_deauthenticate_anonymous_is_noop(self, registry):
        registry.register("c1", object())
        result = await registry.deauthenticate("c1")
        assert result.user_id is None

    @pytest.mark.asyncio
    async def test_stats(self, registry):
        registry.register("c1", object())
        registry.register("c2", object())
        await registry.authenticate("c1", "alice")

        assert registry.get_stats() == {
            "total_connections": 2,
            "authenticated_connections": 1,
            "online_users": 1,
        }
