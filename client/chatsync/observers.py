"""Observer publish/subscribe with explicit cancellation handles.

Two ways to observe an ``Observable``:

    - ``subscribe(callback)``: the callback runs synchronously on every
      publish. Exceptions raised by a callback are logged and never
      reach the publisher.
    - ``stream(maxsize)``: an async-iterable subscription backed by a
      bounded ``asyncio.Queue``. When the queue is full the oldest item
      is dropped, so a slow consumer never delays the publisher.

Both return a handle whose ``cancel()`` detaches the observer.

Usage:
    states = Observable("connection-state")
    handle = states.subscribe(lambda change: print(change))
    ...
    handle.cancel()
"""
import asyncio
import logging
from typing import Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_STREAM_SIZE = 100


class Subscription:
    """Cancellation handle returned by ``Observable.subscribe``."""

    def __init__(self, observable: "Observable", callback: Callable):
        self._observable = observable
        self.callback = callback
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._observable._remove(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.cancel()


class StreamSubscription(Subscription, Generic[T]):
    """Bounded, async-iterable subscription.

    Items are buffered in an ``asyncio.Queue``; when it is full the oldest
    buffered item is discarded to make room. Iteration ends after
    ``cancel()``.
    """

    def __init__(self, observable: "Observable", maxsize: int = DEFAULT_STREAM_SIZE):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0
        super().__init__(observable, self._offer)

    def _offer(self, item: T) -> None:
        if self.queue.full():
            try:
                self.queue.get_nowait()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(item)

    def cancel(self) -> None:
        was_active = self.active
        super().cancel()
        if was_active:
            # Wake any pending consumer
            if self.queue.full():
                self.queue.get_nowait()
            self.queue.put_nowait(None)

    def __aiter__(self) -> "StreamSubscription[T]":
        return self

    async def __anext__(self) -> T:
        if not self.active and self.queue.empty():
            raise StopAsyncIteration
        item = await self.queue.get()
        if item is None and not self.active:
            raise StopAsyncIteration
        return item


class Observable(Generic[T]):
    """A named channel of values with synchronous fan-out."""

    def __init__(self, name: str = ""):
        self.name = name
        self._subscriptions: List[Subscription] = []

    def subscribe(self, callback: Callable[[T], None]) -> Subscription:
        subscription = Subscription(self, callback)
        self._subscriptions.append(subscription)
        return subscription

    def stream(self, maxsize: int = DEFAULT_STREAM_SIZE) -> StreamSubscription[T]:
        subscription: StreamSubscription[T] = StreamSubscription(self, maxsize)
        self._subscriptions.append(subscription)
        return subscription

    def publish(self, value: T) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.active:
                continue
            try:
                subscription.callback(value)
            except Exception as e:
                logger.error(f"Error in {self.name or 'observer'} callback: {e}")

    def clear(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.cancel()

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def __len__(self) -> int:
        return len(self._subscriptions)

