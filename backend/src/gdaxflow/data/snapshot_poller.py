"""
Rate-limited order book snapshot poller.

Provides SnapshotPoller, which on every interval fetches one level 3 order
book per tracked product while never issuing more than R requests per
second, and emits one SnapshotCycleResult per cycle.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Iterator, List, Optional, Set, Sequence

import aiohttp

from ..config import config
from ..models import SnapshotCycleResult, SnapshotRecord

logger = logging.getLogger("gdaxflow.poller")

Fetcher = Callable[[str], Awaitable[SnapshotRecord]]


class SnapshotFetchError(Exception):
    """A snapshot request failed or returned a non-200 status."""
    pass


class RateLimiter:
    """
    Gate for dispatching chunks of at most R requests per period.

    wait() returns at most once per period; the first call returns
    immediately. The spacing carries over between poll cycles.
    """

    def __init__(self, requests_per_second: int, period: float = 1.0):
        if requests_per_second < 1:
            raise ValueError("requests_per_second must be >= 1")
        if period <= 0:
            raise ValueError("period must be positive")
        self.requests_per_second = requests_per_second
        self.period = period
        self._last_tick: Optional[float] = None
        self._lock = asyncio.Lock()

    def chunks(self, items: Sequence[str]) -> Iterator[List[str]]:
        """Consecutive chunks of at most requests_per_second items."""
        size = self.requests_per_second
        for start in range(0, len(items), size):
            yield list(items[start:start + size])

    async def wait(self) -> None:
        """Block until the next tick is due."""
        async with self._lock:
            loop = asyncio.get_running_loop()
            if self._last_tick is not None:
                due = self._last_tick + self.period
                # Timers may fire a little early; loop until the tick is really due
                now = loop.time()
                while now < due:
                    await asyncio.sleep(due - now)
                    now = loop.time()
            self._last_tick = loop.time()


class SnapshotPoller:
    """
    Polls order book snapshots for a set of products on a fixed interval.

    Each fetch runs as its own task and reports exactly one outcome; a
    cycle completes once every product has an outcome.
    """

    def __init__(
        self,
        api_url: str = None,
        requests_per_second: int = None,
        timeout_seconds: float = None,
        book_level: int = None,
        queue_size: int = None,
        fetcher: Optional[Fetcher] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        """
        Initialize the poller.

        Args:
            api_url: REST API base URL (default from config)
            requests_per_second: Upstream rate limit R (default from config)
            timeout_seconds: Total timeout of one snapshot request
            book_level: Order book level to request
            queue_size: Capacity of out_queue
            fetcher: Coroutine function fetching one snapshot, defaults to fetch_snapshot
            rate_limiter: Chunk gate, defaults to RateLimiter(requests_per_second)
        """
        self.api_url = (api_url or config.GDAX_API_URL).rstrip("/")
        self.requests_per_second = (
            requests_per_second if requests_per_second is not None else config.SNAPSHOT_REQUESTS_PER_SECOND
        )
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else config.SNAPSHOT_FETCH_TIMEOUT
        self.book_level = book_level if book_level is not None else config.SNAPSHOT_BOOK_LEVEL
        if self.requests_per_second < 1:
            raise ValueError("requests_per_second must be >= 1")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")

        queue_size = queue_size if queue_size is not None else config.PIPELINE_QUEUE_SIZE
        self.out_queue: asyncio.Queue[SnapshotCycleResult] = asyncio.Queue(maxsize=queue_size)

        self._fetcher: Fetcher = fetcher or self.fetch_snapshot
        self._rate_limiter = rate_limiter or RateLimiter(self.requests_per_second)
        self._session: Optional[aiohttp.ClientSession] = None
        self._tasks: Set[asyncio.Task] = set()
        self._running = False

        # Statistics
        self._cycles_completed = 0
        self._snapshots_fetched = 0
        self._fetch_errors = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def fetch_snapshot(self, product_id: str) -> SnapshotRecord:
        """
        Fetch and parse the order book for one product.

        Raises:
            SnapshotFetchError: On transport failure or non-200 status
            SnapshotParseError: If the order book is malformed
        """
        session = await self._get_session()
        url = f"{self.api_url}/products/{product_id}/book"

        try:
            async with session.get(url, params={"level": str(self.book_level)}) as response:
                if response.status != 200:
                    raise SnapshotFetchError(
                        f"invalid response from server for {product_id}: {response.status} {response.reason}"
                    )
                payload = await response.json()
        except asyncio.TimeoutError as e:
            raise SnapshotFetchError(f"order book request for {product_id} timed out") from e
        except aiohttp.ClientError as e:
            raise SnapshotFetchError(f"could not get the order book for {product_id}: {e}") from e

        return SnapshotRecord.from_order_book(product_id, payload)

    async def _fetch_one(self, product_id: str, outcomes: asyncio.Queue) -> None:
        """Fetch one product and report exactly one outcome."""
        try:
            snapshot = await self._fetcher(product_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await outcomes.put((product_id, None, e))
        else:
            await outcomes.put((product_id, snapshot, None))

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def poll_cycle(self, product_ids: Sequence[str]) -> SnapshotCycleResult:
        """
        Fetch one snapshot per product, respecting the rate limit.

        Products are dispatched in chunks of R, one chunk per rate limiter
        tick. The result holds one outcome per unique product id.
        """
        unique_ids = list(dict.fromkeys(product_ids))
        result = SnapshotCycleResult(started_at=time.time())
        outcomes: asyncio.Queue = asyncio.Queue()

        async def dispatch():
            for chunk in self._rate_limiter.chunks(unique_ids):
                await self._rate_limiter.wait()
                for product_id in chunk:
                    self._spawn(self._fetch_one(product_id, outcomes))

        dispatcher = asyncio.create_task(dispatch())
        try:
            while result.resolved < len(unique_ids):
                product_id, snapshot, error = await outcomes.get()
                if product_id in result.snapshots or product_id in result.errors:
                    logger.warning(f"Duplicate snapshot outcome for {product_id} ignored")
                    continue
                if error is not None:
                    self._fetch_errors += 1
                    result.errors[product_id] = error
                else:
                    self._snapshots_fetched += 1
                    result.snapshots[product_id] = snapshot
            await dispatcher
        finally:
            if not dispatcher.done():
                dispatcher.cancel()

        result.finished_at = time.time()
        self._cycles_completed += 1
        return result

    async def run(
        self,
        product_ids: Sequence[str],
        interval: float,
        shutdown_event: Optional[asyncio.Event] = None,
    ) -> None:
        """
        Main polling loop: one cycle per interval, first cycle immediately.

        Cycles never overlap; a cycle that overruns the interval delays
        the next one.
        """
        self._running = True
        loop = asyncio.get_running_loop()
        logger.info(
            f"Snapshot poller started for {len(product_ids)} products every {interval:.0f}s "
            f"at {self.requests_per_second} req/s -> {self.api_url}"
        )

        try:
            while self._running:
                if shutdown_event and shutdown_event.is_set():
                    break

                cycle_start = loop.time()
                result = await self.poll_cycle(product_ids)
                logger.info(
                    f"Snapshot cycle complete: {len(result.snapshots)} ok, {len(result.errors)} failed "
                    f"in {result.finished_at - result.started_at:.2f}s"
                )
                await self.out_queue.put(result)

                delay = max(0.0, interval - (loop.time() - cycle_start))
                if shutdown_event is None:
                    await asyncio.sleep(delay)
                    continue
                try:
                    await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
                    break
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            logger.info("Snapshot poller stopped")

    def stop(self) -> None:
        """Stop the poller after the current cycle."""
        self._running = False

    async def close(self) -> None:
        """Cancel in-flight fetches and close the HTTP session."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._session and not self._session.closed:
            await self._session.close()

    def get_stats(self):
        """Get poller statistics."""
        return {
            "running": self._running,
            "requests_per_second": self.requests_per_second,
            "cycles_completed": self._cycles_completed,
            "snapshots_fetched": self._snapshots_fetched,
            "fetch_errors": self._fetch_errors,
            "in_flight": len(self._tasks),
            "queue_size": self.out_queue.qsize(),
        }
