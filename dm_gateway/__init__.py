"""
Realtime gateway for the direct-messaging backend.

Tracks live WebSocket connections, their users and rooms, derives presence,
and fans domain events out to subscribed clients.
"""

# Install the structured logger class before any gateway module creates its
# module-level logger.
import shared.config.logging  # noqa: F401
