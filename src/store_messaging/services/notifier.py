"""In-process realtime notifier keyed by store id.

Subscribers get change notifications, not authoritative payloads: on every
event they re-run their read path against the message store. Because of that
a notification that finds the subscriber's queue full can be dropped, a
refetch is already pending for that subscriber.

Events are indexed twice, by store and by the thread's customer, so a
customer's inbox hears about a thread it has not seen yet.
"""

import asyncio
import threading
from typing import AsyncIterator, Dict, Iterable, Optional, Set

import structlog

from ..domain.models import ChangeEvent

logger = structlog.get_logger()

_CLOSED = object()


class Subscription:
    """A view's interest in one or more stores' message streams.

    Use as a context manager so the subscription is torn down together with
    the view that owns it.
    """

    def __init__(self, notifier: "RealtimeNotifier", queue_size: int) -> None:
        self._notifier = notifier
        # Room for at least one event, plus one slot kept for the close sentinel.
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(queue_size, 1) + 1)
        self._loop = asyncio.get_running_loop()
        self.store_ids: Set[str] = set()
        self.customer_ids: Set[str] = set()
        self.closed = False

    def add_store(self, store_id: str) -> None:
        if self.closed or store_id in self.store_ids:
            return
        self.store_ids.add(store_id)
        self._notifier._register(self._notifier._by_store, store_id, self)

    def add_customer(self, user_id: str) -> None:
        """Follow every thread of this customer, in any store."""
        if self.closed or user_id in self.customer_ids:
            return
        self.customer_ids.add(user_id)
        self._notifier._register(self._notifier._by_customer, user_id, self)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._notifier._unregister(self)
        self._call_in_loop(self._put_sentinel)

    def drain(self) -> int:
        """Drop queued notifications that a single refetch already covers."""
        dropped = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return dropped
            if item is _CLOSED:
                self._put_sentinel()
                return dropped
            dropped += 1

    def _offer(self, event: ChangeEvent) -> None:
        if self.closed or self._queue.qsize() >= self._queue.maxsize - 1:
            return
        self._queue.put_nowait(event)

    def _put_sentinel(self) -> None:
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            pass

    def deliver(self, event: ChangeEvent) -> None:
        self._call_in_loop(self._offer, event)

    def _call_in_loop(self, callback, *args) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            callback(*args)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(callback, *args)

    async def get(self) -> Optional[ChangeEvent]:
        """Wait for the next notification; ``None`` once closed."""
        if self.closed:
            return None
        item = await self._queue.get()
        if item is _CLOSED or self.closed:
            return None
        return item

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ChangeEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class RealtimeNotifier:
    """Publish-subscribe hub for message-log changes."""

    def __init__(self, queue_size: int = 16) -> None:
        self.queue_size = queue_size
        self._by_store: Dict[str, Set[Subscription]] = {}
        self._by_customer: Dict[str, Set[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, *store_ids: str, customer_ids: Iterable[str] = ()) -> Subscription:
        """Register interest in the given stores and in these customers' threads.

        Must be called from a running event loop; events are delivered on it.
        """
        subscription = Subscription(self, self.queue_size)
        for store_id in store_ids:
            subscription.add_store(store_id)
        for user_id in customer_ids:
            subscription.add_customer(user_id)
        logger.debug(
            "subscription_opened",
            store_ids=sorted(subscription.store_ids),
            customer_ids=sorted(subscription.customer_ids),
        )
        return subscription

    def publish(self, event: ChangeEvent) -> int:
        """Fan an event out to its subscribers without awaiting any of them."""
        with self._lock:
            targets = set(self._by_store.get(event.store_id, ()))
            if event.user_id is not None:
                targets.update(self._by_customer.get(event.user_id, ()))
        for subscription in targets:
            subscription.deliver(event)
        logger.debug(
            "change_published",
            store_id=event.store_id,
            kind=event.kind.value,
            subscribers=len(targets),
        )
        return len(targets)

    def subscriber_count(self, store_id: Optional[str] = None) -> int:
        with self._lock:
            if store_id is not None:
                return len(self._by_store.get(store_id, ()))
            return len(self._all())

    def close_all(self) -> None:
        with self._lock:
            subscriptions = self._all()
        for subscription in subscriptions:
            subscription.close()
        logger.info("notifier_closed", subscriptions=len(subscriptions))

    def _all(self) -> Set[Subscription]:
        return {
            s
            for index in (self._by_store, self._by_customer)
            for subs in index.values()
            for s in subs
        }

    def _register(
        self, index: Dict[str, Set[Subscription]], key: str, subscription: Subscription
    ) -> None:
        with self._lock:
            index.setdefault(key, set()).add(subscription)

    def _unregister(self, subscription: Subscription) -> None:
        with self._lock:
            for index, keys in (
                (self._by_store, subscription.store_ids),
                (self._by_customer, subscription.customer_ids),
            ):
                for key in keys:
                    subscribers = index.get(key)
                    if not subscribers:
                        continue
                    subscribers.discard(subscription)
                    if not subscribers:
                        del index[key]
        logger.debug(
            "subscription_closed",
            store_ids=sorted(subscription.store_ids),
            customer_ids=sorted(subscription.customer_ids),
        )
