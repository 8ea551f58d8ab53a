"""
Batch buffer for amortized database writes.

Provides BatchBuffer, which accumulates records between periodic flush
ticks and writes each generation with one bulk insert. Failed batches are
reported, never retried.
"""

import asyncio
import logging
import threading
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..config import config
from ..models import FlushResult

logger = logging.getLogger("gdaxflow.batch_buffer")

Writer = Callable[[List[Any]], Awaitable[int]]


class BatchBuffer:
    """
    Accumulate-then-flush buffer with a single bulk write per tick.

    push() and the flush swap share one lock, so every pushed record lands
    in exactly one generation. When max_size records are waiting, further
    pushes are dropped and counted.
    """

    def __init__(
        self,
        kind: str,
        writer: Writer,
        flush_interval: float = None,
        max_size: int = None,
        result_queue_size: int = None,
    ):
        """
        Initialize the buffer.

        Args:
            kind: Label used in logs and flush results, e.g. "messages"
            writer: Async callable performing one bulk write, returns rows written
            flush_interval: Seconds between flush ticks (default from config)
            max_size: Maximum records held before pushes are dropped
            result_queue_size: Capacity of the results queue
        """
        self.kind = kind
        self.flush_interval = flush_interval if flush_interval is not None else config.BATCH_FLUSH_INTERVAL
        self.max_size = max_size if max_size is not None else config.BATCH_MAX_BUFFER_SIZE
        if self.flush_interval <= 0:
            raise ValueError("flush_interval must be positive")
        if self.max_size <= 0:
            raise ValueError("max_size must be positive")

        self._writer = writer
        self._records: List[Any] = []
        self._lock = threading.Lock()
        self._flush_lock = asyncio.Lock()

        result_queue_size = result_queue_size if result_queue_size is not None else config.PIPELINE_QUEUE_SIZE
        self.results: asyncio.Queue[FlushResult] = asyncio.Queue(maxsize=result_queue_size)

        # Background task management
        self._flush_task: Optional[asyncio.Task] = None
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Metrics
        self._records_pushed = 0
        self._records_dropped = 0
        self._records_written = 0
        self._records_failed = 0
        self._flushes = 0
        self._failed_flushes = 0
        self._last_flush_time: Optional[float] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def push(self, record: Any) -> bool:
        """
        Add a record to the current generation.

        Returns:
            bool: True if buffered, False if dropped because the buffer is full
        """
        with self._lock:
            if len(self._records) >= self.max_size:
                self._records_dropped += 1
                dropped = self._records_dropped
            else:
                self._records.append(record)
                self._records_pushed += 1
                return True

        if dropped == 1 or dropped % 1000 == 0:
            logger.warning(f"{self.kind} buffer full ({self.max_size}), {dropped} records dropped so far")
        return False

    def _swap(self) -> List[Any]:
        """Take the current generation and start an empty one."""
        with self._lock:
            records, self._records = self._records, []
        return records

    async def flush(self) -> Optional[FlushResult]:
        """
        Write everything buffered so far in one bulk write.

        Returns:
            The FlushResult also published on results, or None if the
            buffer was empty and no write was issued
        """
        async with self._flush_lock:
            records = self._swap()
            if not records:
                return None

            started = time.monotonic()
            try:
                rows = await self._writer(records)
                result = FlushResult(
                    kind=self.kind,
                    count=len(records),
                    rows_written=rows or 0,
                    duration_seconds=time.monotonic() - started,
                )
                self._records_written += len(records)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                result = FlushResult(
                    kind=self.kind,
                    count=len(records),
                    error=e,
                    duration_seconds=time.monotonic() - started,
                )
                self._records_failed += len(records)
                self._failed_flushes += 1

            self._flushes += 1
            self._last_flush_time = time.time()
            self._publish(result)
            return result

    def _publish(self, result: FlushResult) -> None:
        """Report a flush outcome, dropping the oldest one if nobody is reading."""
        try:
            self.results.put_nowait(result)
        except asyncio.QueueFull:
            try:
                self.results.get_nowait()
            except asyncio.QueueEmpty:
                pass
            self.results.put_nowait(result)
            logger.warning(f"{self.kind} flush results queue full, oldest result discarded")

    async def start(self) -> None:
        """Start the background flush loop."""
        if self._running:
            logger.warning(f"{self.kind} buffer is already running")
            return

        self._running = True
        self._shutdown_event.clear()
        self._flush_task = asyncio.create_task(self._flush_loop())
        logger.info(f"{self.kind} buffer started: flush_interval={self.flush_interval}s, max_size={self.max_size}")

    async def stop(self) -> None:
        """Stop the flush loop and write whatever is still buffered."""
        if self._running:
            self._running = False
            self._shutdown_event.set()
            if self._flush_task:
                await self._flush_task
                self._flush_task = None

        # Drain the final partial generation
        await self.flush()

        logger.info(
            f"{self.kind} buffer stopped. Final stats: pushed={self._records_pushed}, "
            f"written={self._records_written}, failed={self._records_failed}, dropped={self._records_dropped}"
        )

    async def _flush_loop(self) -> None:
        """Flush once per interval until stopped."""
        while self._running:
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.flush_interval
                )
                # Shutdown signal received
                break

            except asyncio.TimeoutError:
                await self.flush()

        logger.debug(f"{self.kind} flush loop stopped")

    def get_stats(self) -> Dict[str, Any]:
        """Get current buffer statistics."""
        return {
            "kind": self.kind,
            "running": self._running,
            "buffered": len(self),
            "records_pushed": self._records_pushed,
            "records_dropped": self._records_dropped,
            "records_written": self._records_written,
            "records_failed": self._records_failed,
            "flushes": self._flushes,
            "failed_flushes": self._failed_flushes,
            "last_flush_time": self._last_flush_time,
            "config": {
                "flush_interval": self.flush_interval,
                "max_size": self.max_size,
            },
        }
