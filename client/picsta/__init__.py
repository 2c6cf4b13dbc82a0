"""Picsta realtime client core.

Asyncio client for the Picsta messaging and notification path: one
Socket.IO connection per session, per-conversation message streams with
optimistic send, unread aggregation and periodic reconciliation against the
REST API.

Modules:
    - connection: Socket.IO connection manager, backoff, room membership
    - messaging: stream reducer, delivery layer, unread aggregator
    - notifications: notification center
    - api: httpx REST client and resource services
    - events: typed publish/subscribe bus
    - main: logging setup and the RealtimeSession composition root
"""

__version__ = "0.1.0"
