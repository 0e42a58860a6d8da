"""
Road Recorder - Observable Streams
Bounded broadcast channels for processed samples and write status
"""

import asyncio
import logging
from typing import Generic, List, Optional, Set, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class _Closed:
    """End-of-stream marker"""


_CLOSED = _Closed()


class Subscription(Generic[T]):
    """
    One subscriber's view of a Broadcast

    Iterate with ``async for``. Errors published on the channel are raised
    from the iterator at the point they were published; iteration ends when
    the channel closes or the subscription is cancelled.
    """

    def __init__(self, channel: 'Broadcast[T]', maxsize: int):
        self._channel = channel
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        self.closed = False

    def _offer(self, item) -> None:
        if self.closed:
            return
        if self._queue.full():
            # Slow subscriber: drop its oldest item so producers never block
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    def _close(self) -> None:
        if self.closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(_CLOSED)
        self.closed = True

    def cancel(self) -> None:
        """Stop receiving items"""
        self._channel._unsubscribe(self)
        self._close()

    def drain(self) -> List[T]:
        """
        Return every item queued so far without waiting.

        Raises the first queued error, if any, after removing it.
        """
        items: List[T] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _CLOSED:
                break
            if isinstance(item, BaseException):
                raise item
            items.append(item)
        return items

    def __aiter__(self):
        return self

    async def __anext__(self) -> T:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class Broadcast(Generic[T]):
    """
    Fan-out channel with a bounded queue per subscriber

    publish() never blocks or suspends: a subscriber whose queue is full
    loses its oldest item. Items published before a subscription exists are
    not replayed.
    """

    def __init__(self, name: str, maxsize: int = 1000):
        self.name = name
        self.maxsize = maxsize
        self._subscribers: Set[Subscription[T]] = set()
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    def subscribe(self, maxsize: Optional[int] = None) -> Subscription[T]:
        sub: Subscription[T] = Subscription(self, maxsize or self.maxsize)
        if self._closed:
            sub._close()
        else:
            self._subscribers.add(sub)
        return sub

    def _unsubscribe(self, sub: Subscription[T]) -> None:
        self._subscribers.discard(sub)

    def publish(self, item: T) -> None:
        if self._closed:
            logger.debug(f"Dropping item published on closed channel '{self.name}'")
            return
        for sub in list(self._subscribers):
            sub._offer(item)

    def publish_error(self, error: BaseException) -> None:
        """Deliver an error in-band to every subscriber"""
        self.publish(error)  # type: ignore[arg-type]

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for sub in list(self._subscribers):
            sub._close()
        self._subscribers.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def __repr__(self):
        return f"<Broadcast(name={self.name}, subscribers={len(self._subscribers)})>"
