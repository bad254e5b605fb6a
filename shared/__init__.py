"""
Shared modules for the direct-messaging backend.

Holds configuration, logging, token verification and the event publishing
helpers used by both the REST write path and the realtime gateway.
"""
