"""
Tests for the user directory adapters.

The SQL adapter runs against an in-memory SQLite database shared across
threads (StaticPool), since every call executes in a worker thread.
"""

import asyncio
import time

import pytest
from sqlalchemy import create_engine, insert, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from dm_gateway.components.data.user_directory import (
    FRIEND_STATUS_ACCEPTED,
    FRIEND_STATUS_PENDING,
    InMemoryUserDirectory,
    SqlUserDirectory,
    UserDirectory,
    friends_table,
    metadata,
    users_table,
)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    metadata.create_all(bind=engine)
    with engine.begin() as conn:
        conn.execute(insert(users_table), [
            {"id": "alice", "online": False},
            {"id": "bob", "online": False},
            {"id": "carol", "online": False},
            {"id": "dave", "online": False},
        ])
        conn.execute(insert(friends_table), [
            {"requester_id": "alice", "recipient_id": "bob", "status": FRIEND_STATUS_ACCEPTED},
            {"requester_id": "carol", "recipient_id": "alice", "status": FRIEND_STATUS_ACCEPTED},
            {"requester_id": "alice", "recipient_id": "dave", "status": FRIEND_STATUS_PENDING},
        ])
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    yield factory
    metadata.drop_all(bind=engine)
    engine.dispose()


class TestSqlUserDirectory:

    @pytest.mark.asyncio
    async def test_set_online_persists(self, session_factory):
        directory = SqlUserDirectory(session_factory=session_factory)

        await directory.set_online("alice", True)

        with session_factory() as db:
            online = db.execute(select(users_table.c.online).where(users_table.c.id == "alice")).scalar_one()
        assert online is True
        assert directory.get_stats()["writes"] == 1

    @pytest.mark.asyncio
    async def test_set_online_unknown_user_is_not_an_error(self, session_factory):
        directory = SqlUserDirectory(session_factory=session_factory)
        await directory.set_online("nobody", True)

    @pytest.mark.asyncio
    async def test_friends_are_accepted_either_direction(self, session_factory):
        directory = SqlUserDirectory(session_factory=session_factory)

        assert await directory.friends_of("alice") == ["bob", "carol"]
        assert await directory.friends_of("bob") == ["alice"]
        assert await directory.friends_of("dave") == []

    @pytest.mark.asyncio
    async def test_timeout_raises(self, session_factory):
        class SlowDirectory(SqlUserDirectory):
            def _friends_of_sync(self, user_id):
                time.sleep(0.2)
                return []

        directory = SlowDirectory(timeout=0.01, session_factory=session_factory)

        with pytest.raises(asyncio.TimeoutError):
            await directory.friends_of("alice")
        assert directory.get_stats()["timeouts"] == 1

    def test_satisfies_protocol(self, session_factory):
        assert isinstance(SqlUserDirectory(session_factory=session_factory), UserDirectory)
        assert isinstance(InMemoryUserDirectory(), UserDirectory)


class TestInMemoryUserDirectory:

    @pytest.mark.asyncio
    async def test_friendships_are_symmetric(self):
        directory = InMemoryUserDirectory({"alice": ["bob", "carol"]})
        assert await directory.friends_of("bob") == ["alice"]

        directory.remove_friendship("carol", "alice")
        assert await directory.friends_of("alice") == ["bob"]

    @pytest.mark.asyncio
    async def test_injected_failures(self):
        directory = InMemoryUserDirectory()
        directory.set_failures = 1
        directory.lookup_failures = 1

        with pytest.raises(ConnectionError):
            await directory.set_online("alice", True)
        with pytest.raises(ConnectionError):
            await directory.friends_of("alice")

        await directory.set_online("alice", True)
        assert directory.is_online("alice")
        assert directory.writes == [("alice", True)]
