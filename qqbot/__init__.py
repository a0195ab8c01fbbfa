"""
QQ Bot channel adapter.

Connects a multi-channel chat host to the official QQ Bot open platform:

    1. Account registry (layered credential resolution)
    2. Access-token cache (one refresh per credential pair at a time)
    3. Target resolver (c2c / group / channel addresses)
    4. Outbound dispatcher (passive replies and proactive sends)
    5. Gateway sessions (inbound WebSocket, reconnect with backoff)
    6. Status store (per-account runtime snapshots)

``qqbot.plugin.QQBotChannelPlugin`` exposes all of it as host hooks.
"""

__version__ = "0.1.0"
