"""
Select-over-ready-sources primitive for the coordinator loop.

Multiplexer waits on several bounded asyncio queues at once and hands back
one item from whichever is ready, choosing at random among ready sources.
It also watches long-running tasks so that a source dying is surfaced as a
PipelineError instead of a silent stall.
"""

import asyncio
import logging
import random
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger("gdaxflow.multiplexer")


class PipelineError(Exception):
    """A pipeline source ended; the pipeline cannot continue."""
    pass


class Multiplexer:
    """
    Fair choice among ready queues.

    One pending get() is kept per source. An item that has been taken off a
    queue but not chosen stays in its completed getter and is returned by a
    later call, so nothing is lost.
    """

    def __init__(
        self,
        sources: Dict[str, asyncio.Queue],
        watch: Optional[Dict[str, asyncio.Task]] = None,
        stop_event: Optional[asyncio.Event] = None,
        rng: Optional[random.Random] = None,
    ):
        self._sources = dict(sources)
        self._watch = dict(watch or {})
        self._stop_event = stop_event
        self._random = rng or random.Random()
        self._getters: Dict[str, asyncio.Future] = {}
        self._stop_waiter: Optional[asyncio.Task] = None
        self._closed = False

    def _ensure_getters(self) -> None:
        loop = asyncio.get_running_loop()
        for name, queue in self._sources.items():
            if name in self._getters:
                continue
            if not queue.empty():
                # Already queued items are ready now, ahead of any source failure
                getter = loop.create_future()
                getter.set_result(queue.get_nowait())
                self._getters[name] = getter
            else:
                self._getters[name] = asyncio.create_task(queue.get(), name=f"mux-get-{name}")

    def _watched_failure(self, name: str, task: asyncio.Task) -> PipelineError:
        if task.cancelled():
            return PipelineError(f"{name} task was cancelled")
        exc = task.exception()
        if exc is not None:
            error = PipelineError(f"{name} failed: {exc}")
            error.__cause__ = exc
            return error
        return PipelineError(f"{name} ended unexpectedly")

    async def next(self) -> Optional[Tuple[str, Any]]:
        """
        Wait for the next item from any source.

        Returns:
            (source name, item), or None once the stop event is set

        Raises:
            PipelineError: If a watched task has finished and no item is ready
        """
        if self._closed:
            raise RuntimeError("Multiplexer is closed")

        while True:
            if self._stop_event is not None and self._stop_event.is_set():
                return None

            self._ensure_getters()

            ready = [name for name, getter in self._getters.items() if getter.done()]
            if ready:
                name = self._random.choice(ready)
                return name, self._getters.pop(name).result()

            for name, task in self._watch.items():
                if task.done():
                    raise self._watched_failure(name, task)

            waiters = set(self._getters.values()) | set(self._watch.values())
            if self._stop_event is not None:
                if self._stop_waiter is None or self._stop_waiter.done():
                    self._stop_waiter = asyncio.create_task(self._stop_event.wait())
                waiters.add(self._stop_waiter)

            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)

    def close(self) -> None:
        """Cancel pending getters."""
        self._closed = True
        for name, getter in self._getters.items():
            if not getter.done():
                getter.cancel()
            elif not getter.cancelled():
                logger.debug(f"Discarding unread item from {name} on close")
        self._getters.clear()
        if self._stop_waiter is not None and not self._stop_waiter.done():
            self._stop_waiter.cancel()

    async def drain(self) -> List[Tuple[str, Any]]:
        """
        Close the multiplexer and return every item it still holds.

        Call once the producers have stopped. Per source, an item already
        taken by a getter comes first, followed by the rest of its queue.
        """
        self._closed = True
        pending = [getter for getter in self._getters.values() if not getter.done()]
        for getter in pending:
            getter.cancel()
        if pending:
            # A cancelled get() leaves its item in the queue
            await asyncio.gather(*pending, return_exceptions=True)

        items: List[Tuple[str, Any]] = []
        for name, queue in self._sources.items():
            getter = self._getters.pop(name, None)
            if getter is not None and not getter.cancelled() and getter.exception() is None:
                items.append((name, getter.result()))
            while not queue.empty():
                items.append((name, queue.get_nowait()))

        self._getters.clear()
        if self._stop_waiter is not None and not self._stop_waiter.done():
            self._stop_waiter.cancel()
        return items
