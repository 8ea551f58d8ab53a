"""
GDAX Flow ingestion pipeline.

Consumes the GDAX full order feed and periodic level 3 order book
snapshots, and persists both to PostgreSQL:
- Streaming feed subscription over WebSocket
- Rate-limited snapshot polling over REST
- Optional batched, parameter-bound bulk inserts
"""

__version__ = "0.1.0"

from .config import config, logger

__all__ = [
    "config",
    "logger",
]
