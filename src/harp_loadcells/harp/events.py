from __future__ import annotations

import logging
import queue
import threading
from typing import Iterator, List, Optional, Union

from .errors import SubscriptionClosed
from .frames import Message, MessageType

logger = logging.getLogger(__name__)

# queued after the last message when a subscription closes
_CLOSED = object()


class Subscription:
    """
    Consumer handle on the event stream of one register (or all registers).

    Messages are queued in arrival order. Iteration blocks between deliveries
    and ends once the subscription is closed and its queue drained. A closed
    subscription cannot be reopened; subscribe again instead.
    """

    def __init__(
        self,
        multiplexer: "EventMultiplexer",
        address: Optional[int],
        maxsize: int,
        max_missed: int,
    ):
        self.address = address
        self.maxsize = maxsize
        self.max_missed = max_missed
        self.missed = 0
        self.delivered = 0
        self._consecutive_missed = 0
        # unbounded so the close marker always fits; _offer enforces maxsize
        self._queue: "queue.Queue[Union[Message, object]]" = queue.Queue()
        self._multiplexer = multiplexer
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def matches(self, message: Message) -> bool:
        return self.address is None or message.address == self.address

    def get(self, timeout: Optional[float] = None) -> Message:
        """
        Next message. Raises ``queue.Empty`` on timeout and
        :class:`SubscriptionClosed` once closed and drained.
        """
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            # leave the marker for the next caller
            self._queue.put_nowait(_CLOSED)
            raise SubscriptionClosed("Subscription is closed")
        return item  # type: ignore[return-value]

    def close(self) -> None:
        self._multiplexer.unsubscribe(self)

    def __iter__(self) -> Iterator[Message]:
        while True:
            try:
                yield self.get()
            except SubscriptionClosed:
                return

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _offer(self, message: Message) -> bool:
        if self._queue.qsize() >= self.maxsize:
            self.missed += 1
            self._consecutive_missed += 1
            return False
        self._queue.put_nowait(message)
        self.delivered += 1
        self._consecutive_missed = 0
        return True

    def _mark_closed(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        self._queue.put_nowait(_CLOSED)


class EventMultiplexer:
    """
    Fans unsolicited event messages out to subscribers.

    Publishing never blocks: each subscriber owns a bounded queue and a
    subscriber that misses ``max_missed`` consecutive deliveries is dropped.
    """

    def __init__(self, queue_maxsize: int = 256, max_missed: int = 32):
        self.queue_maxsize = queue_maxsize
        self.max_missed = max_missed
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(
        self,
        address: Optional[int] = None,
        maxsize: Optional[int] = None,
        max_missed: Optional[int] = None,
    ) -> Subscription:
        subscription = Subscription(
            self,
            address,
            maxsize=maxsize or self.queue_maxsize,
            max_missed=max_missed or self.max_missed,
        )
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
            subscription._mark_closed()

    def publish(self, message: Message) -> int:
        if message.message_type is not MessageType.EVENT:
            logger.debug("Discarding unmatched reply %s", message)
            return 0
        delivered = 0
        dropped: List[Subscription] = []
        with self._lock:
            for subscription in self._subscriptions:
                if not subscription.matches(message):
                    continue
                if subscription._offer(message):
                    delivered += 1
                elif subscription._consecutive_missed >= subscription.max_missed:
                    dropped.append(subscription)
            for subscription in dropped:
                self._subscriptions.remove(subscription)
                subscription._mark_closed()
        for subscription in dropped:
            logger.warning(
                "Dropping subscriber for %s after %d missed events",
                "all registers" if subscription.address is None else f"register {subscription.address}",
                subscription._consecutive_missed,
            )
        return delivered

    def close_all(self) -> int:
        with self._lock:
            subscriptions = list(self._subscriptions)
            self._subscriptions.clear()
            for subscription in subscriptions:
                subscription._mark_closed()
        return len(subscriptions)

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscriptions)
