"""
Configuration management for the GDAX ingestion pipeline.

Loads environment variables and provides typed configuration for the
feed subscriber, snapshot poller, batch buffers and storage pool.
"""

import os
import logging
from typing import List, Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


# Products followed when the CLI is given "all" or nothing at all
DEFAULT_PRODUCT_IDS: List[str] = [
    "BTC-USD",
    "BTC-EUR",
    "BTC-GBP",
    "ETH-USD",
    "ETH-EUR",
    "ETH-BTC",
    "LTC-USD",
    "LTC-EUR",
    "LTC-BTC",
]

ALL_PRODUCTS_SENTINEL = "all"


class IngestConfig:
    """Configuration for the ingestion pipeline."""

    def __init__(self):
        # Storage (the CLI --database flag takes precedence)
        self.DATABASE_URI: Optional[str] = os.getenv("DATABASE_URI")

        # Exchange endpoints
        self.GDAX_WS_URL: str = os.getenv("GDAX_WS_URL", "wss://ws-feed.gdax.com")
        self.GDAX_API_URL: str = os.getenv("GDAX_API_URL", "https://api.gdax.com")
        self.GDAX_FEED_CHANNEL: str = os.getenv("GDAX_FEED_CHANNEL", "full")

        # Snapshot polling (GDAX API rate limit is 3 public requests per second)
        self.SNAPSHOT_REQUESTS_PER_SECOND: int = int(os.getenv("SNAPSHOT_REQUESTS_PER_SECOND", "3"))
        self.SNAPSHOT_FETCH_TIMEOUT: float = float(os.getenv("SNAPSHOT_FETCH_TIMEOUT", "3.0"))
        self.SNAPSHOT_BOOK_LEVEL: int = int(os.getenv("SNAPSHOT_BOOK_LEVEL", "3"))
        self.SNAPSHOTS_INTERVAL_MINUTES: int = int(os.getenv("SNAPSHOTS_INTERVAL_MINUTES", "60"))

        # Batching
        self.BATCH_FLUSH_INTERVAL: float = float(os.getenv("BATCH_FLUSH_INTERVAL", "1.0"))
        self.BATCH_MAX_BUFFER_SIZE: int = int(os.getenv("BATCH_MAX_BUFFER_SIZE", "100000"))

        # Capacity of every queue feeding the coordinator
        self.PIPELINE_QUEUE_SIZE: int = int(os.getenv("PIPELINE_QUEUE_SIZE", "10000"))

        # WebSocket settings
        self.WEBSOCKET_PING_INTERVAL: int = int(os.getenv("WEBSOCKET_PING_INTERVAL", "20"))
        self.WEBSOCKET_PING_TIMEOUT: int = int(os.getenv("WEBSOCKET_PING_TIMEOUT", "60"))
        self.WEBSOCKET_MAX_SIZE: int = int(os.getenv("WEBSOCKET_MAX_SIZE", str(2**20)))

        # Database pool settings
        self.DB_POOL_MIN_SIZE: int = int(os.getenv("DB_POOL_MIN_SIZE", "2"))
        self.DB_POOL_MAX_SIZE: int = int(os.getenv("DB_POOL_MAX_SIZE", "10"))
        self.DB_POOL_TIMEOUT: int = int(os.getenv("DB_POOL_TIMEOUT", "30"))
        self.DB_STATEMENT_CACHE_SIZE: int = int(os.getenv("DB_STATEMENT_CACHE_SIZE", "100"))

        # Logging
        self.LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
        self.LOG_FORMAT: str = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        self.ENVIRONMENT: str = os.getenv("ENVIRONMENT", "local")

        self._validate_config()

    def _validate_config(self) -> None:
        """Validate configuration values."""
        # Skip validation in test environment
        if self.ENVIRONMENT == "test":
            return

        if self.SNAPSHOT_REQUESTS_PER_SECOND < 1:
            raise ValueError("SNAPSHOT_REQUESTS_PER_SECOND must be >= 1")

        if self.SNAPSHOT_FETCH_TIMEOUT <= 0:
            raise ValueError("SNAPSHOT_FETCH_TIMEOUT must be positive")

        if self.SNAPSHOTS_INTERVAL_MINUTES <= 0:
            raise ValueError("SNAPSHOTS_INTERVAL_MINUTES must be positive")

        if self.BATCH_FLUSH_INTERVAL <= 0:
            raise ValueError("BATCH_FLUSH_INTERVAL must be positive")

        if self.BATCH_MAX_BUFFER_SIZE <= 0:
            raise ValueError("BATCH_MAX_BUFFER_SIZE must be positive")

        if self.PIPELINE_QUEUE_SIZE <= 0:
            raise ValueError("PIPELINE_QUEUE_SIZE must be positive")

        if self.DB_POOL_MIN_SIZE > self.DB_POOL_MAX_SIZE:
            raise ValueError("DB_POOL_MIN_SIZE cannot exceed DB_POOL_MAX_SIZE")

    @property
    def snapshot_interval_seconds(self) -> float:
        return self.SNAPSHOTS_INTERVAL_MINUTES * 60.0


def resolve_product_ids(product_ids: Optional[List[str]]) -> List[str]:
    """
    Expand and validate the products selected on the command line.

    An empty selection, or one containing "all", expands to the full
    default list. Any other id must be one of the default products.

    Raises:
        ValueError: If an unknown product id is given
    """
    if not product_ids:
        return list(DEFAULT_PRODUCT_IDS)

    known = set(DEFAULT_PRODUCT_IDS)
    for product_id in product_ids:
        if product_id == ALL_PRODUCTS_SENTINEL:
            return list(DEFAULT_PRODUCT_IDS)
        if product_id not in known:
            raise ValueError(f"invalid product id: {product_id}")

    return list(product_ids)


# Global configuration instance
config = IngestConfig()

logger = logging.getLogger("gdaxflow")


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """Set up logging configuration for the pipeline."""
    logging.basicConfig(
        level=getattr(logging, (level or config.LOG_LEVEL).upper()),
        format=config.LOG_FORMAT
    )
    return logger
