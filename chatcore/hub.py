"""
Subscription hub: live, cancellable streams of core events.

Each subscription owns an unbounded asyncio.Queue, so publishing is a
non-blocking put and never stalls the write path. Consumers iterate a
Subscription with `async for`; the iterator suspends on the queue between
emissions.

Three kinds of topics exist:
- conversation       key = conversation id, items are Message
- conversation_list  key = user id, items are list[Conversation] snapshots
- presence           key = user id, items are Presence
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Iterable, Optional

from chatcore.errors import SubscriptionClosed
from chatcore.metrics import subscription_opened, subscription_released
from chatcore.schemas import Conversation, Message, Presence

logger = logging.getLogger(__name__)

CONVERSATION = "conversation"
CONVERSATION_LIST = "conversation_list"
PRESENCE = "presence"

# Queue sentinels
_CANCELLED = object()
_HOST_CLOSED = object()

ObservedCallback = Callable[[str, Message], Awaitable[None]]


class Subscription:
    """
    A lazy, infinite stream of events for one topic.

    The stream ends when the consumer calls cancel() (or leaves an
    `async with` block). When the host closes the hub, the consumer sees
    SubscriptionClosed exactly once and the stream then ends.
    """

    def __init__(
        self,
        hub: "SubscriptionHub",
        kind: str,
        key: str,
        viewer_id: Optional[str] = None,
        on_observed: Optional[ObservedCallback] = None,
    ):
        self.kind = kind
        self.key = key
        self.viewer_id = viewer_id
        self._hub = hub
        self._on_observed = on_observed
        self._queue: asyncio.Queue = asyncio.Queue()
        self._cancelled = False
        self._finished = False

    @property
    def topic(self) -> str:
        return f"{self.kind}:{self.key}"

    @property
    def active(self) -> bool:
        return not (self._cancelled or self._finished)

    def offer(self, item: Any) -> None:
        """Queue an item for the consumer. Ignored once cancelled."""
        if self._cancelled or self._finished:
            return
        self._queue.put_nowait(item)

    def cancel(self) -> None:
        """
        Stop the stream immediately and release the hub registration.

        Items already queued are dropped. A consumer currently waiting for
        the next item is woken and its iteration ends.
        """
        if self._cancelled:
            return
        self._cancelled = True
        self._hub._release(self)
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CANCELLED)

    def _host_close(self) -> None:
        if self._cancelled or self._finished:
            return
        self._queue.put_nowait(_HOST_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._cancelled or self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CANCELLED or self._cancelled:
            self._finished = True
            raise StopAsyncIteration
        if item is _HOST_CLOSED:
            self._finished = True
            raise SubscriptionClosed(self.topic)
        if self._on_observed is not None and self.viewer_id is not None:
            try:
                await self._on_observed(self.viewer_id, item)
            except Exception:
                logger.exception(f"Observation callback failed for {self.topic}")
            if self._cancelled:
                self._finished = True
                raise StopAsyncIteration
        return item

    async def next(self, timeout: Optional[float] = None):
        """Await the next item, optionally bounded by a timeout in seconds."""
        return await asyncio.wait_for(self.__anext__(), timeout)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.cancel()


class SubscriptionHub:
    """
    Registry of live subscriptions and fan-out of events to them.

    Emissions for one topic reach each subscriber in the order they were
    published. Delivery is at-least-once; consumers must tolerate repeats.
    """

    def __init__(self):
        self._subscriptions: dict[tuple[str, str], list[Subscription]] = defaultdict(list)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(
        self,
        kind: str,
        key: str,
        initial: Iterable[Any] = (),
        viewer_id: Optional[str] = None,
        on_observed: Optional[ObservedCallback] = None,
    ) -> Subscription:
        """
        Register a subscription. `initial` items are queued ahead of any
        event published after registration.
        """
        if self._closed:
            raise SubscriptionClosed(f"{kind}:{key}")
        subscription = Subscription(self, kind, key, viewer_id=viewer_id, on_observed=on_observed)
        for item in initial:
            subscription.offer(item)
        self._subscriptions[(kind, key)].append(subscription)
        subscription_opened(kind)
        logger.debug(f"Subscription registered: {subscription.topic}")
        return subscription

    def subscribe_conversation(
        self,
        conversation_id: str,
        viewer_id: Optional[str] = None,
        on_observed: Optional[ObservedCallback] = None,
        backlog: Iterable[Message] = (),
    ) -> Subscription:
        return self.subscribe(
            CONVERSATION, conversation_id, initial=backlog, viewer_id=viewer_id, on_observed=on_observed
        )

    def subscribe_conversation_list(self, user_id: str, snapshot: list[Conversation]) -> Subscription:
        return self.subscribe(CONVERSATION_LIST, user_id, initial=[snapshot])

    def subscribe_presence(self, user_id: str, current: Presence) -> Subscription:
        return self.subscribe(PRESENCE, user_id, initial=[current])

    def _release(self, subscription: Subscription) -> None:
        topic_key = (subscription.kind, subscription.key)
        subscribers = self._subscriptions.get(topic_key)
        if not subscribers or subscription not in subscribers:
            return
        subscribers.remove(subscription)
        if not subscribers:
            del self._subscriptions[topic_key]
        subscription_released(subscription.kind)
        logger.debug(f"Subscription released: {subscription.topic}")

    def subscriber_count(self, kind: str, key: str) -> int:
        return len(self._subscriptions.get((kind, key), ()))

    def publish(self, kind: str, key: str, item: Any) -> int:
        """
        Fan an item out to every subscriber of a topic.

        A failure to notify one subscriber is logged and does not affect the
        others. Returns the number of subscribers notified.
        """
        delivered = 0
        for subscription in list(self._subscriptions.get((kind, key), ())):
            try:
                subscription.offer(item)
                delivered += 1
            except Exception:
                logger.exception(f"Failed to notify subscriber of {subscription.topic}")
        return delivered

    def publish_message(self, message: Message) -> int:
        return self.publish(CONVERSATION, message.conversation_id, message)

    def publish_conversation_list(self, user_id: str, snapshot: list[Conversation]) -> int:
        return self.publish(CONVERSATION_LIST, user_id, snapshot)

    def publish_presence(self, presence: Presence) -> int:
        return self.publish(PRESENCE, presence.user_id, presence)

    def close(self) -> None:
        """
        Terminate every live subscription on behalf of the host.
        """
        self._closed = True
        for topic_key in list(self._subscriptions):
            for subscription in list(self._subscriptions.get(topic_key, ())):
                subscription._host_close()
                self._release(subscription)
        logger.info("Subscription hub closed")
