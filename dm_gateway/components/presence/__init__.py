"""Presence tracking."""

from dm_gateway.components.presence.tracker import PresenceTracker

__all__ = ["PresenceTracker"]
