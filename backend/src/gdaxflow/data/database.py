"""
PostgreSQL storage for feed events and order book snapshots.

Manages the messages and snapshots tables and provides async connection
management, single-row inserts and parameter-bound bulk inserts.
"""

import asyncio
import asyncpg
import logging
from contextlib import asynccontextmanager
from typing import List, Optional, Sequence

from ..config import config
from ..models import EventRecord, SnapshotRecord, MESSAGE_COLUMNS, SNAPSHOT_COLUMNS

logger = logging.getLogger("gdaxflow.database")


# Postgres array types for each messages column, used by the unnest bulk insert
MESSAGE_COLUMN_TYPES = (
    "text", "text", "bigint", "text", "bigint",
    "text", "text", "timestamptz",
    "numeric", "numeric", "numeric", "numeric", "numeric",
    "text", "text", "text",
    "numeric", "numeric", "numeric", "text",
)

SNAPSHOT_COLUMN_TYPES = ("text", "bigint", "text", "numeric", "numeric", "text")


def _unnest_insert(table: str, columns: Sequence[str], types: Sequence[str]) -> str:
    """Build an INSERT that takes one bound array per column."""
    arrays = ", ".join(f"${i}::{t}[]" for i, t in enumerate(types, start=1))
    return f"INSERT INTO {table} ({', '.join(columns)}) SELECT * FROM unnest({arrays})"


def _single_insert(table: str, columns: Sequence[str]) -> str:
    placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
    return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"


INSERT_MESSAGE_SQL = _single_insert("messages", MESSAGE_COLUMNS)
BULK_INSERT_MESSAGES_SQL = _unnest_insert("messages", MESSAGE_COLUMNS, MESSAGE_COLUMN_TYPES)
BULK_INSERT_SNAPSHOTS_SQL = _unnest_insert("snapshots", SNAPSHOT_COLUMNS, SNAPSHOT_COLUMN_TYPES)


def _columns_from_rows(rows: List[tuple], width: int) -> List[list]:
    """Transpose rows into one list per column."""
    columns: List[list] = [[] for _ in range(width)]
    for row in rows:
        for index, value in enumerate(row):
            columns[index].append(value)
    return columns


def message_columns(records: Sequence[EventRecord]) -> List[list]:
    """Column-major bound payload for a bulk messages insert."""
    return _columns_from_rows([r.to_row() for r in records], len(MESSAGE_COLUMNS))


def snapshot_columns(snapshots: Sequence[SnapshotRecord]) -> List[list]:
    """Column-major bound payload for a bulk snapshots insert."""
    rows = []
    for snapshot in snapshots:
        rows.extend(snapshot.to_rows())
    return _columns_from_rows(rows, len(SNAPSHOT_COLUMNS))


class IngestDatabase:
    """PostgreSQL database manager for the ingestion pipeline."""

    def __init__(
        self,
        database_url: str = None,
        pool_min_size: int = None,
        pool_max_size: int = None,
        command_timeout: float = None,
        statement_cache_size: int = None,
    ):
        """Initialize database settings; the pool is created by initialize()."""
        self.database_url = database_url or config.DATABASE_URI
        self.pool_min_size = pool_min_size if pool_min_size is not None else config.DB_POOL_MIN_SIZE
        self.pool_max_size = pool_max_size if pool_max_size is not None else config.DB_POOL_MAX_SIZE
        self.command_timeout = command_timeout if command_timeout is not None else config.DB_POOL_TIMEOUT
        self.statement_cache_size = (
            statement_cache_size if statement_cache_size is not None else config.DB_STATEMENT_CACHE_SIZE
        )
        self._pool: Optional[asyncpg.Pool] = None
        self._init_lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self):
        """Create the connection pool and the tables if missing."""
        async with self._init_lock:
            if self._initialized:
                return

            if not self.database_url:
                raise ValueError("A database URI is required (--database or DATABASE_URI)")

            try:
                self._pool = await asyncpg.create_pool(
                    self.database_url,
                    min_size=self.pool_min_size,
                    max_size=self.pool_max_size,
                    command_timeout=self.command_timeout,
                    statement_cache_size=self.statement_cache_size,
                    server_settings={
                        'application_name': 'gdaxflow',
                        'timezone': 'UTC'
                    }
                )

                # Test the connection
                async with self._pool.acquire() as conn:
                    await conn.fetchval('SELECT 1')

                await self._create_schema()

                logger.info(f"Database initialized with pool size {self.pool_max_size}")
                self._initialized = True

            except Exception as e:
                logger.error(f"Failed to initialize database: {e}")
                raise

    @asynccontextmanager
    async def get_connection(self):
        """Get database connection from pool."""
        if not self._pool:
            await self.initialize()

        async with self._pool.acquire() as conn:
            yield conn

    async def _create_schema(self):
        """Create the messages and snapshots tables."""
        async with self._pool.acquire() as conn:
            await self._create_messages_table(conn)
            await self._create_snapshots_table(conn)
            logger.info("Database schema created successfully")

    async def _create_messages_table(self, conn: asyncpg.Connection):
        """Create messages table, one row per feed event."""
        await conn.execute('''
            CREATE TABLE IF NOT EXISTS messages (
                id BIGSERIAL PRIMARY KEY,
                type VARCHAR(30),
                product_id VARCHAR(20),
                trade_id BIGINT,
                order_id VARCHAR(60),
                sequence BIGINT,
                maker_order_id VARCHAR(60),
                taker_order_id VARCHAR(60),
                time TIMESTAMPTZ,
                remaining_size NUMERIC,
                new_size NUMERIC,
                old_size NUMERIC,
                size NUMERIC,
                price NUMERIC,
                side VARCHAR(10),
                reason VARCHAR(60),
                order_type VARCHAR(10),
                funds NUMERIC,
                new_funds NUMERIC,
                old_funds NUMERIC,
                message TEXT
            );
        ''')

    async def _create_snapshots_table(self, conn: asyncpg.Connection):
        """Create snapshots table, one row per order book level."""
        await conn.execute('''
            CREATE TABLE IF NOT EXISTS snapshots (
                id BIGSERIAL PRIMARY KEY,
                product_id VARCHAR(20),
                sequence BIGINT,
                bid_ask VARCHAR(3),
                price NUMERIC,
                size NUMERIC,
                order_id VARCHAR(60)
            );
        ''')

    async def close(self):
        """Close database connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            self._initialized = False
            logger.info("Database connection pool closed")

    # Single-record writes

    async def insert_message(self, record: EventRecord) -> int:
        """Insert one feed event."""
        async with self.get_connection() as conn:
            await conn.execute(INSERT_MESSAGE_SQL, *record.to_row())
            return 1

    async def insert_snapshot(self, snapshot: SnapshotRecord) -> int:
        """Insert all levels of one snapshot in a single statement."""
        return await self.batch_insert_snapshots([snapshot])

    # Batch writes, one statement per call

    async def batch_insert_messages(self, records: Sequence[EventRecord]) -> int:
        """Bulk insert feed events."""
        if not records:
            return 0

        async with self.get_connection() as conn:
            await conn.execute(BULK_INSERT_MESSAGES_SQL, *message_columns(records))
            return len(records)

    async def batch_insert_snapshots(self, snapshots: Sequence[SnapshotRecord]) -> int:
        """Bulk insert the levels of one or more snapshots."""
        columns = snapshot_columns(snapshots)
        row_count = len(columns[0])
        if row_count == 0:
            return 0

        async with self.get_connection() as conn:
            await conn.execute(BULK_INSERT_SNAPSHOTS_SQL, *columns)
            return row_count
