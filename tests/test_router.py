"""
Tests for event routing and per-connection delivery.

Verifies:
- A connection in several target rooms receives an event once
- exclude skips the sender
- A full outbox drops events for that connection only
- A failing transport never affects sibling connections
"""

import pytest

from dm_gateway.components.events.router import build_frame
from dm_gateway.components.events.types import EventKind, Target
from dm_gateway.connection_manager import ConnectionManager
from tests.conftest import FakeTransport, open_connection


class TestBuildFrame:

    def test_enum_kind_is_serialized_by_value(self):
        assert build_frame(EventKind.RECEIVE_MESSAGE, {"a": 1}) == {
            "type": "receiveMessage",
            "data": {"a": 1},
        }

    def test_string_kind_passes_through(self):
        assert build_frame("customKind", None) == {"type": "customKind", "data": None}


class TestPublish:

    @pytest.mark.asyncio
    async def test_overlapping_targets_deliver_once(self, manager):
        alice, alice_ws = await open_connection(manager, "alice")
        manager.join(alice, "channel:c1")

        queued = manager.publish(
            Target(rooms=frozenset({"channel:c1"}), user_ids=frozenset({"alice"})),
            EventKind.RECEIVE_CHANNEL_UPDATE,
            {"channelId": "c1"},
        )
        await manager.flush()

        assert queued == 1
        assert alice_ws.of_type("receiveChannelUpdate") == [{"channelId": "c1"}]

    @pytest.mark.asyncio
    async def test_user_target_reaches_every_connection(self, manager):
        _, tab1 = await open_connection(manager, "alice")
        _, tab2 = await open_connection(manager, "alice")
        _, other = await open_connection(manager, "carol")

        queued = manager.publish(Target.of_users("alice"), "receiveFriendRequest", {"from": "bob"})
        await manager.flush()

        assert queued == 2
        assert tab1.of_type("receiveFriendRequest") == [{"from": "bob"}]
        assert tab2.of_type("receiveFriendRequest") == [{"from": "bob"}]
        assert other.of_type("receiveFriendRequest") == []

    @pytest.mark.asyncio
    async def test_exclude_skips_connection(self, manager):
        alice, alice_ws = await open_connection(manager, "alice")
        bob, bob_ws = await open_connection(manager, "bob")
        manager.join(alice, "channel:c1")
        manager.join(bob, "channel:c1")

        queued = manager.publish("channel:c1", EventKind.RECEIVE_MESSAGE, {"text": "hi"}, exclude=alice)
        await manager.flush()

        assert queued == 1
        assert alice_ws.of_type("receiveMessage") == []
        assert bob_ws.of_type("receiveMessage") == [{"text": "hi"}]

    @pytest.mark.asyncio
    async def test_empty_room_publishes_nothing(self, manager):
        assert manager.publish("channel:nobody", "receiveMessage", {}) == 0
        assert manager.publish(Target(), "receiveMessage", {}) == 0
        assert manager.metrics.get_snapshot()["delivery"]["events_published"] == 1

    @pytest.mark.asyncio
    async def test_events_arrive_in_publish_order(self, manager):
        alice, alice_ws = await open_connection(manager, "alice")
        manager.join(alice, "channel:c1")

        for i in range(20):
            manager.publish("channel:c1", "receiveMessage", {"seq": i})
        await manager.flush()

        assert [m["seq"] for m in alice_ws.of_type("receiveMessage")] == list(range(20))


class TestBackpressure:

    @pytest.mark.asyncio
    async def test_full_outbox_drops_and_counts(self, directory):
        manager = ConnectionManager(directory, outbox_size=2)
        alice, alice_ws = await open_connection(manager, "alice")
        await manager.flush()
        manager.join(alice, "channel:c1")

        # Nothing awaits between publishes, so the writer never drains
        results = [manager.publish("channel:c1", "receiveMessage", {"seq": i}) for i in range(5)]
        await manager.flush()

        assert results == [1, 1, 0, 0, 0]
        assert [m["seq"] for m in alice_ws.of_type("receiveMessage")] == [0, 1]
        assert manager.metrics.get_snapshot()["delivery"]["deliveries_dropped"] == 3


class TestDeliveryFailure:

    @pytest.mark.asyncio
    async def test_failed_send_isolated_and_marked_dead(self, manager):
        alice, alice_ws = await open_connection(manager, "alice")
        broken_transport = FakeTransport()
        bob, _ = await open_connection(manager, "bob", broken_transport)
        await manager.flush()
        manager.join(alice, "channel:c1")
        manager.join(bob, "channel:c1")

        broken_transport.fail = True
        manager.publish("channel:c1", "receiveMessage", {"text": "one"})
        manager.publish("channel:c1", "receiveMessage", {"text": "two"})
        await manager.flush()

        assert [m["text"] for m in alice_ws.of_type("receiveMessage")] == ["one", "two"]
        snapshot = manager.metrics.get_snapshot()["delivery"]
        assert snapshot["deliveries_failed"] == 1
        assert manager.get_stats()["dead_connections_pending"] == 1

        assert await manager.cleanup_dead_connections() == 1
        assert manager.registry.get(bob) is None
        assert "channel:c1" in manager.rooms.rooms_of(alice)
        assert manager.rooms.subscribers_of("channel:c1") == {alice}
        assert broken_transport.closed_with == 1001

        await manager.flush()
        assert alice_ws.of_type("receiveFriendOffline") == [{"userId": "bob", "online": False}]

    @pytest.mark.asyncio
    async def test_send_to_connection_bypasses_rooms(self, manager):
        connection_id, transport = await open_connection(manager)
        assert manager.router.send_to_connection(connection_id, "error", {"message": "nope"})
        assert not manager.router.send_to_connection("missing", "error", {})
        await manager.flush()
        assert transport.of_type("error") == [{"message": "nope"}]
