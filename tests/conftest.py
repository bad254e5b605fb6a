"""
Pytest configuration and fixtures for gateway tests.

Connections are driven through FakeTransport, which records every frame the
gateway writes, so tests can assert on exactly what a client would receive.
"""

from __future__ import annotations

from typing import Any

import pytest

from dm_gateway.components.data.user_directory import InMemoryUserDirectory
from dm_gateway.connection_manager import ConnectionManager


class FakeTransport:
    """Stand-in for a WebSocket: records frames, optionally fails on send."""

    def __init__(self, fail: bool = False):
        self.sent: list[dict[str, Any]] = []
        self.fail = fail
        self.closed_with: int | None = None

    async def send_json(self, payload: dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("client went away")
        self.sent.append(payload)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = code

    def of_type(self, kind: str) -> list[dict[str, Any]]:
        """Payloads of the frames of one type, in delivery order."""
        return [frame["data"] for frame in self.sent if frame["type"] == kind]

    def types(self) -> list[str]:
        return [frame["type"] for frame in self.sent]


@pytest.fixture
def directory():
    """In-memory user directory; alice and bob are friends."""
    return InMemoryUserDirectory({"alice": ["bob"]})


@pytest.fixture
def manager(directory):
    """Connection manager backed by the in-memory directory."""
    return ConnectionManager(directory, max_connections_per_user=10, outbox_size=256)


async def open_connection(
    manager: ConnectionManager,
    user_id: str | None = None,
    transport: FakeTransport | None = None,
) -> tuple[str, FakeTransport]:
    """Connect (and optionally authenticate) a fake client."""
    transport = transport or FakeTransport()
    connection = manager.connect(transport)
    if user_id is not None:
        await manager.authenticate(connection.connection_id, user_id)
    return connection.connection_id, transport
