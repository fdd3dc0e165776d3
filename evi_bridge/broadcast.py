"""Multi-subscriber fan-out with a bounded replay buffer.

Every subscriber owns a bounded queue. ``publish`` never blocks: when a
subscriber's queue is full the item is dropped for that subscriber and the
drop is counted, so backpressure is visible instead of silent.
"""

import asyncio
import collections
import logging
from typing import Deque, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLOSED = object()


class Subscription(Generic[T]):
    """A single subscriber's view of a :class:`Broadcast`."""

    def __init__(self, channel: "Broadcast[T]", maxsize: int):
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize + 1)
        self._maxsize = maxsize
        self._closed = False
        self.dropped = 0

    def _offer(self, item: T) -> bool:
        if self._closed:
            return True
        if self._queue.qsize() >= self._maxsize:
            self.dropped += 1
            return False
        self._queue.put_nowait(item)
        return True

    def _end(self) -> None:
        if not self._closed:
            self._closed = True
            # One slot is reserved for the end marker.
            self._queue.put_nowait(_CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> T:
        """Wait for the next item; raises ``StopAsyncIteration`` once closed."""
        item = await self._queue.get()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item

    def get_nowait(self) -> T:
        """Return the next item; raises ``asyncio.QueueEmpty`` when none is pending."""
        item = self._queue.get_nowait()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise asyncio.QueueEmpty
        return item

    def close(self) -> None:
        self._channel._unsubscribe(self)
        self._end()

    def __aiter__(self):
        return self

    async def __anext__(self) -> T:
        return await self.get()


class Broadcast(Generic[T]):
    """Publish items to any number of subscribers, replaying the last few."""

    def __init__(self, replay: int = 10, buffer: int = 256, name: str = "broadcast"):
        if buffer <= 0:
            raise ValueError("buffer must be > 0")
        self.name = name
        self._replay: Deque[T] = collections.deque(maxlen=max(replay, 0))
        self._buffer = buffer
        self._subscribers: list[Subscription[T]] = []
        self._closed = False
        self.dropped = 0
        self.published = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def closed(self) -> bool:
        return self._closed

    def replay_cache(self) -> list[T]:
        return list(self._replay)

    def subscribe(self) -> Subscription[T]:
        """Subscribe; the most recent items are delivered first."""
        sub: Subscription[T] = Subscription(self, max(self._buffer, len(self._replay)))
        for item in self._replay:
            sub._offer(item)
        if self._closed:
            sub._end()
        else:
            self._subscribers.append(sub)
        return sub

    def publish(self, item: T) -> bool:
        """Deliver ``item`` to every subscriber without blocking.

        Returns False when the channel is closed or any subscriber dropped it.
        """
        if self._closed:
            logger.debug(f"{self.name}: publish after close ignored")
            return False
        self.published += 1
        self._replay.append(item)
        delivered = True
        for sub in list(self._subscribers):
            if not sub._offer(item):
                delivered = False
                self.dropped += 1
                logger.warning(f"{self.name}: subscriber queue full, item dropped")
        return delivered

    def close(self) -> None:
        """End every subscription. Idempotent."""
        if self._closed:
            return
        self._closed = True
        for sub in self._subscribers:
            sub._end()
        self._subscribers.clear()

    def _unsubscribe(self, sub: Subscription[T]) -> None:
        if sub in self._subscribers:
            self._subscribers.remove(sub)
