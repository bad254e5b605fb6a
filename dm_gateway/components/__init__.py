"""
Gateway components, grouped by concern:

- core: constants and connection context
- connection: locks, registry, rooms, heartbeat
- events: event kinds, targets, router
- presence: presence tracker
- data: user directory adapters
- metrics: counters
- resilience: reconnect backoff
- endpoints: WebSocket endpoints
"""
