"""
Tests for the Coordinator routing and shutdown behaviour.

Feed, poller and database are replaced by fakes exposing the same
interface; queues and buffers are real.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from gdaxflow.coordinator import Coordinator
from gdaxflow.data.feed_client import FeedClosedError, FeedConnectionError, FeedDecodeError
from gdaxflow.data.snapshot_poller import SnapshotFetchError
from gdaxflow.models import Channel, EventRecord, FeedResult, SnapshotCycleResult
from gdaxflow.multiplexer import PipelineError


class FakeFeed:
    def __init__(self, run_error=None):
        self.out_queue = asyncio.Queue()
        self.subscribe = AsyncMock()
        self.close = AsyncMock()
        self.run_error = run_error
        self._stopped = asyncio.Event()

    async def run(self):
        if self.run_error is not None:
            await asyncio.sleep(0.01)
            raise self.run_error
        await self._stopped.wait()

    def stop(self):
        self._stopped.set()

    def get_stats(self):
        return {}


class FakePoller:
    def __init__(self):
        self.out_queue = asyncio.Queue()
        self.close = AsyncMock()
        self.run_args = None
        self._stopped = asyncio.Event()

    async def run(self, product_ids, interval, shutdown_event=None):
        self.run_args = (list(product_ids), interval)
        await self._stopped.wait()

    def stop(self):
        self._stopped.set()

    def get_stats(self):
        return {}


@pytest.fixture
def database():
    db = MagicMock()
    db.insert_message = AsyncMock(return_value=1)
    db.insert_snapshot = AsyncMock(return_value=2)
    db.batch_insert_messages = AsyncMock(side_effect=lambda records: len(records))
    db.batch_insert_snapshots = AsyncMock(side_effect=lambda snapshots: len(snapshots))
    return db


@pytest.fixture
def feed():
    return FakeFeed()


@pytest.fixture
def poller():
    return FakePoller()


def event(sequence, product_id="BTC-USD"):
    return EventRecord(type="open", product_id=product_id, sequence=sequence, price="100.5", remaining_size="1")


def make_coordinator(database, feed, poller, **kwargs):
    return Coordinator(
        database=database,
        feed=feed,
        poller=poller,
        product_ids=["BTC-USD", "ETH-USD"],
        snapshot_interval=60,
        **kwargs,
    )


class TestImmediateMode:

    @pytest.mark.asyncio
    async def test_subscribes_and_starts_poller(self, database, feed, poller, wait_until):
        coordinator = make_coordinator(database, feed, poller)
        shutdown = asyncio.Event()

        task = asyncio.create_task(coordinator.run(shutdown))
        await wait_until(lambda: poller.run_args is not None)
        shutdown.set()
        await asyncio.wait_for(task, timeout=1.0)

        feed.subscribe.assert_awaited_once_with([Channel(name="full", product_ids=["BTC-USD", "ETH-USD"])])
        assert poller.run_args == (["BTC-USD", "ETH-USD"], 60)
        feed.close.assert_awaited()
        poller.close.assert_awaited()

    @pytest.mark.asyncio
    async def test_feed_events_written_one_by_one(self, database, feed, poller, wait_until):
        coordinator = make_coordinator(database, feed, poller)
        shutdown = asyncio.Event()
        task = asyncio.create_task(coordinator.run(shutdown))

        await feed.out_queue.put(FeedResult(event=event(1)))
        await feed.out_queue.put(FeedResult(error=FeedDecodeError("could not decode received message")))
        await feed.out_queue.put(FeedResult(event=event(2)))

        await wait_until(lambda: database.insert_message.await_count == 2)
        shutdown.set()
        await asyncio.wait_for(task, timeout=1.0)

        written = [call.args[0].sequence for call in database.insert_message.await_args_list]
        assert written == [1, 2]
        database.batch_insert_messages.assert_not_awaited()

        stats = coordinator.get_stats()
        assert stats["events_received"] == 2
        assert stats["events_written"] == 2
        assert stats["feed_errors"] == 1

    @pytest.mark.asyncio
    async def test_insert_failure_does_not_stop_pipeline(self, database, feed, poller, wait_until):
        database.insert_message = AsyncMock(side_effect=[RuntimeError("connection lost"), 1])
        coordinator = make_coordinator(database, feed, poller)
        shutdown = asyncio.Event()
        task = asyncio.create_task(coordinator.run(shutdown))

        await feed.out_queue.put(FeedResult(event=event(1)))
        await feed.out_queue.put(FeedResult(event=event(2)))

        await wait_until(lambda: database.insert_message.await_count == 2)
        shutdown.set()
        await asyncio.wait_for(task, timeout=1.0)

        assert coordinator.get_stats()["write_errors"] == 1
        assert coordinator.get_stats()["events_written"] == 1

    @pytest.mark.asyncio
    async def test_snapshot_successes_written_errors_logged(
        self, database, feed, poller, sample_snapshot, wait_until
    ):
        coordinator = make_coordinator(database, feed, poller)
        shutdown = asyncio.Event()
        task = asyncio.create_task(coordinator.run(shutdown))

        cycle = SnapshotCycleResult(
            snapshots={"BTC-USD": sample_snapshot},
            errors={"ETH-USD": SnapshotFetchError("invalid response from server for ETH-USD: 503")},
        )
        await poller.out_queue.put(cycle)

        await wait_until(lambda: database.insert_snapshot.await_count == 1)
        shutdown.set()
        await asyncio.wait_for(task, timeout=1.0)

        database.insert_snapshot.assert_awaited_once_with(sample_snapshot)
        stats = coordinator.get_stats()
        assert stats["snapshots_received"] == 1
        assert stats["snapshot_errors"] == 1
        assert stats["pending_snapshot_writes"] == 0


class TestBatchMode:

    @pytest.mark.asyncio
    async def test_events_flushed_in_one_bulk_write(self, database, feed, poller, wait_until):
        coordinator = make_coordinator(database, feed, poller, batch=True, flush_interval=0.1)
        shutdown = asyncio.Event()
        task = asyncio.create_task(coordinator.run(shutdown))

        for sequence in (1, 2, 3):
            await feed.out_queue.put(FeedResult(event=event(sequence)))

        await wait_until(lambda: database.batch_insert_messages.await_count >= 1)
        shutdown.set()
        await asyncio.wait_for(task, timeout=1.0)

        database.insert_message.assert_not_awaited()
        database.batch_insert_messages.assert_awaited_once()
        [records] = database.batch_insert_messages.await_args.args
        assert [r.sequence for r in records] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_snapshots_buffered(self, database, feed, poller, sample_snapshot, wait_until):
        coordinator = make_coordinator(database, feed, poller, batch=True, flush_interval=0.1)
        shutdown = asyncio.Event()
        task = asyncio.create_task(coordinator.run(shutdown))

        await poller.out_queue.put(SnapshotCycleResult(snapshots={"BTC-USD": sample_snapshot}))

        await wait_until(lambda: database.batch_insert_snapshots.await_count >= 1)
        shutdown.set()
        await asyncio.wait_for(task, timeout=1.0)

        database.insert_snapshot.assert_not_awaited()
        [snapshots] = database.batch_insert_snapshots.await_args.args
        assert snapshots == [sample_snapshot]

    @pytest.mark.asyncio
    async def test_shutdown_drains_buffers(self, database, feed, poller, wait_until):
        coordinator = make_coordinator(database, feed, poller, batch=True, flush_interval=60)
        shutdown = asyncio.Event()
        task = asyncio.create_task(coordinator.run(shutdown))

        await feed.out_queue.put(FeedResult(event=event(7)))
        await wait_until(lambda: coordinator.get_stats()["events_received"] == 1)
        database.batch_insert_messages.assert_not_awaited()

        shutdown.set()
        await asyncio.wait_for(task, timeout=1.0)

        database.batch_insert_messages.assert_awaited_once()
        [records] = database.batch_insert_messages.await_args.args
        assert [r.sequence for r in records] == [7]
        database.batch_insert_snapshots.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_flush_is_logged_not_fatal(self, database, feed, poller, wait_until):
        database.batch_insert_messages = AsyncMock(side_effect=RuntimeError("disk full"))
        coordinator = make_coordinator(database, feed, poller, batch=True, flush_interval=0.05)
        shutdown = asyncio.Event()
        task = asyncio.create_task(coordinator.run(shutdown))

        await feed.out_queue.put(FeedResult(event=event(1)))
        await wait_until(lambda: coordinator.get_stats()["write_errors"] == 1)

        assert not task.done()
        shutdown.set()
        await asyncio.wait_for(task, timeout=1.0)


class TestFailures:

    @pytest.mark.asyncio
    async def test_subscribe_failure_propagates(self, database, poller):
        feed = FakeFeed()
        feed.subscribe = AsyncMock(side_effect=FeedConnectionError("could not open websocket connection"))
        coordinator = make_coordinator(database, feed, poller)

        with pytest.raises(FeedConnectionError):
            await coordinator.run(asyncio.Event())

        poller.close.assert_awaited()

    @pytest.mark.asyncio
    async def test_feed_termination_is_fatal(self, database, poller):
        feed = FakeFeed(run_error=FeedClosedError("feed connection closed"))
        coordinator = make_coordinator(database, feed, poller)

        with pytest.raises(PipelineError) as excinfo:
            await asyncio.wait_for(coordinator.run(asyncio.Event()), timeout=1.0)

        assert isinstance(excinfo.value.__cause__, FeedClosedError)

    @pytest.mark.asyncio
    async def test_feed_termination_still_drains_buffer(self, database, poller):
        feed = FakeFeed(run_error=FeedClosedError("feed connection closed"))
        feed.out_queue.put_nowait(FeedResult(event=event(1)))
        coordinator = make_coordinator(database, feed, poller, batch=True, flush_interval=60)

        with pytest.raises(PipelineError):
            await asyncio.wait_for(coordinator.run(asyncio.Event()), timeout=1.0)

        database.batch_insert_messages.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, database, feed, poller):
        coordinator = make_coordinator(database, feed, poller)

        await coordinator.stop()
        await coordinator.stop()

        feed.close.assert_awaited_once()


class TestShutdownDrain:

    @pytest.mark.asyncio
    async def test_queued_events_written_in_batch_mode(self, database, feed, poller):
        for sequence in range(5):
            feed.out_queue.put_nowait(FeedResult(event=event(sequence)))
        coordinator = make_coordinator(database, feed, poller, batch=True, flush_interval=60)
        shutdown = asyncio.Event()
        shutdown.set()

        await asyncio.wait_for(coordinator.run(shutdown), timeout=1.0)

        database.batch_insert_messages.assert_awaited_once()
        [records] = database.batch_insert_messages.await_args.args
        assert [r.sequence for r in records] == [0, 1, 2, 3, 4]
        assert coordinator.get_stats()["events_received"] == 5

    @pytest.mark.asyncio
    async def test_queued_events_and_snapshots_written_immediately(
        self, database, feed, poller, sample_snapshot
    ):
        for sequence in range(3):
            feed.out_queue.put_nowait(FeedResult(event=event(sequence)))
        poller.out_queue.put_nowait(SnapshotCycleResult(snapshots={"BTC-USD": sample_snapshot}))
        coordinator = make_coordinator(database, feed, poller)
        shutdown = asyncio.Event()
        shutdown.set()

        await asyncio.wait_for(coordinator.run(shutdown), timeout=1.0)

        written = [call.args[0].sequence for call in database.insert_message.await_args_list]
        assert written == [0, 1, 2]
        database.insert_snapshot.assert_awaited_once_with(sample_snapshot)

    @pytest.mark.asyncio
    async def test_events_queued_before_feed_failure_are_written(self, database, poller):
        feed = FakeFeed()
        coordinator = make_coordinator(database, feed, poller)

        async def fill_then_fail():
            for sequence in range(4):
                feed.out_queue.put_nowait(FeedResult(event=event(sequence)))
            raise FeedClosedError("feed connection closed")

        feed.run = fill_then_fail

        with pytest.raises(PipelineError):
            await asyncio.wait_for(coordinator.run(asyncio.Event()), timeout=1.0)

        written = [call.args[0].sequence for call in database.insert_message.await_args_list]
        assert written == [0, 1, 2, 3]
