"""
Event Schema.

Defines the Event dataclass published by the write path and consumed by the
realtime gateway.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Any


@dataclass
class Event:
    """
    Domain event addressed to rooms and/or users.

    'rooms' holds fully qualified room names (see rooms.py); 'user_ids' are
    resolved by the gateway to each user's personal room. At least one
    target is required. 'data' is the payload delivered to clients.
    """

    kind: str
    rooms: list[str] = field(default_factory=list)
    user_ids: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)
    ts: str | None = None
    v: int = 1  # Schema version for future compatibility

    def __post_init__(self) -> None:
        """Validate event fields after initialization."""
        if not self.kind or not isinstance(self.kind, str):
            raise ValueError("Event kind must be a non-empty string")

        for name in ("rooms", "user_ids"):
            values = getattr(self, name)
            if not isinstance(values, list):
                raise ValueError(f"Event {name} must be a list")
            if any(not isinstance(v, str) or not v for v in values):
                raise ValueError(f"Event {name} must contain non-empty strings")

        if not self.rooms and not self.user_ids:
            raise ValueError("Event must target at least one room or user")

        if self.data is not None and not isinstance(self.data, dict):
            raise ValueError("Event data must be a dict or None")

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        data = asdict(self)
        data["data"] = data["data"] or {}
        data["ts"] = data["ts"] or datetime.now(timezone.utc).isoformat()
        return json.dumps(data, ensure_ascii=False, default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "Event":
        """Deserialize event from JSON string. Validation runs in __post_init__."""
        data = json.loads(json_str)
        return cls(**data)
