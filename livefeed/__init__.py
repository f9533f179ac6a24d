"""
livefeed - live-connection resilience engine

Resolves a broadcaster's live room, supervises the long-lived connection
(auto-reconnect, teardown), and publishes normalized, deduplicated live
events plus a 1 Hz stats broadcast to in-process subscribers.
"""

__version__ = "0.1.0"
