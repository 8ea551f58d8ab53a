"""
Coordinator for the ingestion pipeline.

Merges the feed subscriber, the snapshot poller and the batch buffer
outcomes into a single write path:

    FeedSubscriber ──► out_queue ─┐
    SnapshotPoller ──► out_queue ─┼─► Multiplexer ──► Coordinator ──► IngestDatabase
    BatchBuffer(s) ──► results ───┘                        │
                         ▲                                 │ (batch mode)
                         └─────────────────────────────────┘
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Set

from .config import config
from .data.batch_buffer import BatchBuffer
from .data.database import IngestDatabase
from .data.feed_client import FeedSubscriber
from .data.snapshot_poller import SnapshotPoller
from .models import Channel, EventRecord, FeedResult, FlushResult, SnapshotCycleResult, SnapshotRecord
from .multiplexer import Multiplexer

logger = logging.getLogger("gdaxflow.coordinator")


class Coordinator:
    """
    Top-level pipeline loop.

    Routes each feed event to an immediate insert or the message buffer, each
    snapshot to a detached insert or the snapshot buffer, and logs every
    flush outcome. Owns its buffers and pending write tasks.
    """

    def __init__(
        self,
        database: IngestDatabase,
        feed: FeedSubscriber,
        poller: SnapshotPoller,
        product_ids: Sequence[str],
        channels: Optional[List[Channel]] = None,
        snapshot_interval: float = None,
        batch: bool = False,
        verbose: bool = False,
        flush_interval: float = None,
        buffer_max_size: int = None,
        queue_size: int = None,
    ):
        """
        Initialize the coordinator.

        Args:
            database: Storage sink
            feed: Feed subscriber, not yet subscribed
            poller: Snapshot poller
            product_ids: Products to follow on both sources
            channels: Feed channels, defaults to the configured channel for product_ids
            snapshot_interval: Seconds between snapshot cycles
            batch: Buffer writes and flush them periodically
            verbose: Log every parsed record
            flush_interval: Seconds between batch flushes
            buffer_max_size: Maximum records per buffer before pushes are dropped
            queue_size: Capacity of the buffer result queues
        """
        self.database = database
        self.feed = feed
        self.poller = poller
        self.product_ids = list(product_ids)
        self.channels = channels or [Channel(name=config.GDAX_FEED_CHANNEL, product_ids=self.product_ids)]
        self.snapshot_interval = (
            snapshot_interval if snapshot_interval is not None else config.snapshot_interval_seconds
        )
        self.batch = batch
        self.verbose = verbose

        self.message_buffer: Optional[BatchBuffer] = None
        self.snapshot_buffer: Optional[BatchBuffer] = None
        if batch:
            self.message_buffer = BatchBuffer(
                "messages",
                database.batch_insert_messages,
                flush_interval=flush_interval,
                max_size=buffer_max_size,
                result_queue_size=queue_size,
            )
            self.snapshot_buffer = BatchBuffer(
                "snapshots",
                database.batch_insert_snapshots,
                flush_interval=flush_interval,
                max_size=buffer_max_size,
                result_queue_size=queue_size,
            )

        self._tasks: Dict[str, asyncio.Task] = {}
        self._write_tasks: Set[asyncio.Task] = set()
        self._mux: Optional[Multiplexer] = None
        self._stopped = False

        # Statistics
        self._events_received = 0
        self._events_written = 0
        self._feed_errors = 0
        self._snapshots_received = 0
        self._snapshot_errors = 0
        self._write_errors = 0

    @property
    def _buffers(self) -> List[BatchBuffer]:
        return [b for b in (self.message_buffer, self.snapshot_buffer) if b is not None]

    async def run(self, shutdown_event: Optional[asyncio.Event] = None) -> None:
        """
        Run the pipeline until shutdown_event is set or a source fails.

        Raises:
            FeedConnectionError: If the feed cannot be subscribed
            PipelineError: If the feed stream or the poller ends
        """
        try:
            await self.feed.subscribe(self.channels)
            await self._start(shutdown_event)

            while True:
                item = await self._mux.next()
                if item is None:
                    logger.info("Shutdown requested")
                    break
                source, payload = item
                await self._route(source, payload)
        finally:
            await self.stop()

    async def _start(self, shutdown_event: Optional[asyncio.Event]) -> None:
        """Start source tasks and buffers and build the multiplexer."""
        self._tasks["feed"] = asyncio.create_task(self.feed.run(), name="feed")
        self._tasks["poller"] = asyncio.create_task(
            self.poller.run(self.product_ids, self.snapshot_interval, shutdown_event),
            name="poller",
        )

        sources = {
            "feed": self.feed.out_queue,
            "snapshots": self.poller.out_queue,
        }
        for buffer in self._buffers:
            await buffer.start()
            sources[f"{buffer.kind}_flush"] = buffer.results

        self._mux = Multiplexer(sources, watch=dict(self._tasks), stop_event=shutdown_event)

        logger.info(
            f"Pipeline started for {len(self.product_ids)} products: {', '.join(self.product_ids)} "
            f"(batch={self.batch}, snapshot_interval={self.snapshot_interval:.0f}s)"
        )

    async def _route(self, source: str, payload: Any) -> None:
        if source == "feed":
            await self._handle_feed_result(payload)
        elif source == "snapshots":
            self._handle_snapshot_cycle(payload)
        else:
            self._handle_flush_result(payload)

    async def _handle_feed_result(self, result: FeedResult) -> None:
        if result.error is not None:
            self._feed_errors += 1
            logger.warning(f"error from messages feed: {result.error}")
            return

        record: EventRecord = result.event
        self._events_received += 1

        if self.message_buffer is not None:
            self.message_buffer.push(record)
        else:
            try:
                await self.database.insert_message(record)
                self._events_written += 1
            except Exception as e:
                self._write_errors += 1
                logger.error(f"could not insert message {record.product_id} seq={record.sequence}: {e}")

        if self.verbose:
            logger.info(f"Message: {record}")

    def _handle_snapshot_cycle(self, result: SnapshotCycleResult) -> None:
        for product_id, error in result.errors.items():
            self._snapshot_errors += 1
            logger.warning(f"error from snapshots feed for {product_id}: {error}")

        for product_id, snapshot in result.snapshots.items():
            self._snapshots_received += 1
            if self.snapshot_buffer is not None:
                self.snapshot_buffer.push(snapshot)
            else:
                task = asyncio.create_task(self._write_snapshot(snapshot), name=f"snapshot-write-{product_id}")
                self._write_tasks.add(task)
                task.add_done_callback(self._write_tasks.discard)

            if self.verbose:
                logger.info(
                    f"Snapshot: {product_id} seq={snapshot.sequence} "
                    f"bids={len(snapshot.bids)} asks={len(snapshot.asks)}"
                )

    async def _write_snapshot(self, snapshot: SnapshotRecord) -> None:
        """Insert one snapshot off the main loop and log the outcome."""
        try:
            rows = await self.database.insert_snapshot(snapshot)
            logger.debug(f"Inserted snapshot {snapshot.product_id} seq={snapshot.sequence}: {rows} levels")
        except Exception as e:
            self._write_errors += 1
            logger.error(f"could not insert snapshot {snapshot.product_id}: {e}")

    def _handle_flush_result(self, result: FlushResult) -> None:
        if result.error is not None:
            self._write_errors += 1
            logger.error(f"could not insert {result.count} {result.kind}: {result.error}")
        else:
            logger.debug(
                f"Flushed {result.count} {result.kind} ({result.rows_written} rows) "
                f"in {result.duration_seconds * 1000:.1f}ms"
            )

    async def stop(self) -> None:
        """Stop sources, route queued items, drain buffers and wait for detached writes."""
        if self._stopped:
            return
        self._stopped = True

        self.feed.stop()
        self.poller.stop()
        await self.feed.close()

        for task in self._tasks.values():
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        await self.poller.close()

        # Sources are stopped; route what they had already queued
        if self._mux is not None:
            pending = await self._mux.drain()
            if pending:
                logger.info(f"Routing {len(pending)} items received before shutdown")
            for source, payload in pending:
                await self._route(source, payload)

        for buffer in self._buffers:
            await buffer.stop()
            while not buffer.results.empty():
                self._handle_flush_result(buffer.results.get_nowait())

        if self._write_tasks:
            await asyncio.gather(*list(self._write_tasks), return_exceptions=True)

        logger.info(
            f"Pipeline stopped. Final stats: events={self._events_received}, "
            f"feed_errors={self._feed_errors}, snapshots={self._snapshots_received}, "
            f"snapshot_errors={self._snapshot_errors}, write_errors={self._write_errors}"
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get pipeline statistics."""
        return {
            "batch": self.batch,
            "events_received": self._events_received,
            "events_written": self._events_written,
            "feed_errors": self._feed_errors,
            "snapshots_received": self._snapshots_received,
            "snapshot_errors": self._snapshot_errors,
            "write_errors": self._write_errors,
            "pending_snapshot_writes": len(self._write_tasks),
            "feed": self.feed.get_stats(),
            "poller": self.poller.get_stats(),
            "buffers": [buffer.get_stats() for buffer in self._buffers],
        }
