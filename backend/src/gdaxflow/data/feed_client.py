"""
WebSocket feed subscriber for the GDAX full order channel.

Provides FeedSubscriber, which opens one long-lived connection, sends a
single subscription request and turns every received frame into exactly
one FeedResult on a bounded queue. There is no reconnection: when the
stream ends, run() raises FeedClosedError.
"""

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from ..config import config
from ..models import Channel, EventRecord, FeedResult

logger = logging.getLogger("gdaxflow.feed")

# Frames that acknowledge or keep the connection alive, never persisted
CONTROL_MESSAGE_TYPES = frozenset({"subscriptions", "heartbeat"})


class FeedError(Exception):
    """Base exception for feed errors."""
    pass


class FeedConnectionError(FeedError):
    """Could not dial the feed or send the subscription."""
    pass


class FeedClosedError(FeedError):
    """The feed stream ended; there is no reconnection."""
    pass


class FeedDecodeError(FeedError):
    """A received frame could not be decoded into an event."""
    pass


class FeedSubscriber:
    """
    Streaming consumer for the GDAX feed.

    Call subscribe() once, then run() as a dedicated task. Consumers read
    FeedResult items from out_queue; a full queue blocks the reader.
    """

    def __init__(
        self,
        ws_url: str = None,
        queue_size: int = None,
        connector: Optional[Callable[..., Awaitable[Any]]] = None,
        ping_interval: int = None,
        ping_timeout: int = None,
        max_size: int = None,
    ):
        """
        Initialize the subscriber.

        Args:
            ws_url: Feed endpoint (default from config)
            queue_size: Capacity of out_queue (default from config)
            connector: Coroutine function used to dial, defaults to websockets.connect
            ping_interval: WebSocket keepalive ping interval in seconds
            ping_timeout: Seconds to wait for a pong before the connection is dropped
            max_size: Maximum frame size in bytes
        """
        self.ws_url = ws_url or config.GDAX_WS_URL
        self.ping_interval = ping_interval if ping_interval is not None else config.WEBSOCKET_PING_INTERVAL
        self.ping_timeout = ping_timeout if ping_timeout is not None else config.WEBSOCKET_PING_TIMEOUT
        self.max_size = max_size if max_size is not None else config.WEBSOCKET_MAX_SIZE
        self._connector = connector or websockets.connect

        queue_size = queue_size if queue_size is not None else config.PIPELINE_QUEUE_SIZE
        self.out_queue: asyncio.Queue[FeedResult] = asyncio.Queue(maxsize=queue_size)

        self._websocket = None
        self._running = False
        self._channels: List[Channel] = []

        # Statistics
        self._frames_received = 0
        self._events_emitted = 0
        self._decode_errors = 0
        self._control_frames = 0
        self._connected_at: Optional[float] = None
        self._last_frame_time: Optional[float] = None

    async def subscribe(self, channels: List[Channel]) -> None:
        """
        Dial the feed and send the subscription request.

        Raises:
            FeedConnectionError: If the dial or the subscription write fails
        """
        try:
            self._websocket = await self._connector(
                self.ws_url,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
                max_size=self.max_size,
                compression=None,
            )
        except Exception as e:
            raise FeedConnectionError(f"could not open websocket connection to {self.ws_url}: {e}") from e

        self._connected_at = time.time()
        self._channels = list(channels)
        subscription = {
            "type": "subscribe",
            "channels": [channel.model_dump() for channel in self._channels],
        }

        try:
            await self._websocket.send(json.dumps(subscription))
        except Exception as e:
            await self.close()
            raise FeedConnectionError(f"could not write subscription: {e}") from e

        names = ", ".join(channel.name for channel in self._channels)
        logger.info(f"Subscribed to {self.ws_url} channels: {names}")

    async def run(self) -> None:
        """
        Receive loop; runs until the stream ends or stop() is called.

        Raises:
            FeedConnectionError: If subscribe() has not succeeded
            FeedClosedError: If the stream closes or a read fails
        """
        if self._websocket is None:
            raise FeedConnectionError("subscribe() must succeed before run()")

        websocket = self._websocket
        self._running = True
        try:
            while self._running:
                try:
                    raw = await websocket.recv()
                except ConnectionClosed as e:
                    if not self._running:
                        break
                    raise FeedClosedError(f"feed connection closed: {e}") from e
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    if not self._running:
                        break
                    raise FeedClosedError(f"could not read received message: {e}") from e

                self._frames_received += 1
                self._last_frame_time = time.time()

                result = self._decode(raw)
                if result is not None:
                    await self.out_queue.put(result)
        finally:
            self._running = False
            await self.close()
            logger.info(
                f"Feed reader stopped. Final stats: frames={self._frames_received}, "
                f"events={self._events_emitted}, decode_errors={self._decode_errors}"
            )

    def _decode(self, raw: Any) -> Optional[FeedResult]:
        """Turn one frame into an event or an error; control frames yield None."""
        try:
            record = EventRecord.from_json(raw)
        except ValueError as e:
            self._decode_errors += 1
            return FeedResult(error=FeedDecodeError(f"could not decode received message: {e}"))

        if record.type in CONTROL_MESSAGE_TYPES:
            self._control_frames += 1
            logger.debug(f"Control frame received: {record.type}")
            return None

        if record.type == "error":
            logger.warning(f"Feed reported error: {record.message}")

        self._events_emitted += 1
        return FeedResult(event=record)

    def stop(self) -> None:
        """Ask the receive loop to finish."""
        self._running = False

    async def close(self) -> None:
        """Close the WebSocket connection."""
        websocket, self._websocket = self._websocket, None
        if websocket is not None:
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"Error closing feed connection: {e}")

    def get_stats(self) -> Dict[str, Any]:
        """Get subscriber statistics."""
        return {
            "ws_url": self.ws_url,
            "channels": [channel.model_dump() for channel in self._channels],
            "running": self._running,
            "connected": self._websocket is not None,
            "frames_received": self._frames_received,
            "events_emitted": self._events_emitted,
            "decode_errors": self._decode_errors,
            "control_frames": self._control_frames,
            "queue_size": self.out_queue.qsize(),
            "connected_at": self._connected_at,
            "last_frame_time": self._last_frame_time,
        }
