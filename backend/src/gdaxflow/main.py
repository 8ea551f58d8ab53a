"""
Main entry point for the GDAX ingestion pipeline.

Gathers and stores real time orders data and periodic order book
snapshots from GDAX.
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from gdaxflow.config import config, logger, resolve_product_ids, setup_logging
from gdaxflow.coordinator import Coordinator
from gdaxflow.data.database import IngestDatabase
from gdaxflow.data.feed_client import FeedSubscriber
from gdaxflow.data.snapshot_poller import SnapshotPoller


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gdaxflow",
        description="gather and store real time orders data from GDAX",
    )
    parser.add_argument("--database", "-d", metavar="DATABASE_URI", default=config.DATABASE_URI,
                        help="connect to database at DATABASE_URI (env: DATABASE_URI)")
    parser.add_argument("--products", "-p", action="append", metavar="PRODUCT_ID",
                        help="product to follow, repeatable; 'all' follows every supported product")
    parser.add_argument("--snapshots-interval", type=int, default=config.SNAPSHOTS_INTERVAL_MINUTES,
                        help="interval, in minutes, between each orderbook snapshot")
    parser.add_argument("--batch", "-b", action="store_true",
                        help="enable batch inserting of messages and snapshots")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="log every received message and snapshot")
    return parser


async def run(args: argparse.Namespace) -> None:
    """Bootstrap storage and run the pipeline until shutdown or a fatal error."""
    product_ids = resolve_product_ids(args.products)

    database = IngestDatabase(args.database)
    await database.initialize()

    coordinator = Coordinator(
        database=database,
        feed=FeedSubscriber(),
        poller=SnapshotPoller(),
        product_ids=product_ids,
        snapshot_interval=args.snapshots_interval * 60.0,
        batch=args.batch,
        verbose=args.verbose,
    )

    shutdown_event = asyncio.Event()
    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown_event.set)

    try:
        await coordinator.run(shutdown_event)
    finally:
        await database.close()


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point; returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.database:
        parser.error("a database URI is required (--database or DATABASE_URI)")
    if args.snapshots_interval <= 0:
        parser.error("--snapshots-interval must be a positive number of minutes")
    try:
        resolve_product_ids(args.products)
    except ValueError as e:
        parser.error(f"could not get list of product ids: {e}")

    setup_logging()
    if args.verbose:
        logging.getLogger("gdaxflow").setLevel(logging.DEBUG)

    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1

    logger.info("Shutdown complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
