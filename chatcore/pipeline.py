"""
Message delivery pipeline.

send() validates a message, gives it the next sequence id of its
conversation, persists it and, once the store has acknowledged it, updates
the conversation index and fans it out to subscribers.

Everything that touches one conversation's sequence runs under that
conversation's lock. Different conversations never wait on each other.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional, Protocol

from chatcore.errors import ConversationNotFound, EmptyBody, InvalidParticipant, PersistenceUnavailable
from chatcore.hub import SubscriptionHub
from chatcore.index import ConversationIndex
from chatcore.metrics import record_persistence_retry, record_send_outcome
from chatcore.schemas import DeliveryState, Message
from chatcore.storage import utcnow

logger = logging.getLogger(__name__)


class MessageStore(Protocol):
    """Durable, at-least-once message persistence."""

    def append(self, conversation_id: str, message: Message) -> bool: ...

    def read_all(self, conversation_id: str, after_id: Optional[int] = None) -> list[Message]: ...

    def last_id(self, conversation_id: str) -> int: ...

    def update_delivery_state(self, conversation_id: str, message_id: int, state: DeliveryState) -> bool: ...


class MessageDeliveryPipeline:
    def __init__(
        self,
        store: MessageStore,
        index: ConversationIndex,
        hub: SubscriptionHub,
        max_attempts: int = 5,
        base_delay: float = 0.05,
        max_delay: float = 2.0,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._store = store
        self._index = index
        self._hub = hub
        self._max_attempts = max_attempts
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._clock = clock
        self._sleep = sleep

        self._locks: dict[str, asyncio.Lock] = {}
        # Last allocated sequence id and timestamp per conversation
        self._last_id: dict[str, int] = {}
        self._last_sent_at: dict[str, datetime] = {}
        # Messages allocated but not yet acknowledged by the store, in id order
        self._pending: dict[str, list[Message]] = {}

    def lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    def seed(self, conversation_id: str, last_id: int) -> None:
        """Record the newest stored sequence id of a conversation. Never moves backwards."""
        self._last_id[conversation_id] = max(self._last_id.get(conversation_id, 0), last_id)

    def pending(self, conversation_id: str) -> list[Message]:
        return list(self._pending.get(conversation_id, ()))

    def _validate(self, conversation_id: str, sender_id: str, body: str) -> None:
        if conversation_id not in self._index:
            record_send_outcome("conversation_not_found")
            raise ConversationNotFound(conversation_id)
        if sender_id not in self._index.participants(conversation_id):
            record_send_outcome("invalid_participant")
            raise InvalidParticipant(conversation_id, sender_id)
        if not body or not body.strip():
            record_send_outcome("empty_body")
            raise EmptyBody()

    async def send(self, conversation_id: str, sender_id: str, body: str) -> Message:
        """
        Send a message and return it in `sent` state.

        Raises:
            ConversationNotFound, InvalidParticipant, EmptyBody: immediately,
                nothing is allocated.
            PersistenceUnavailable: the store did not acknowledge within the
                retry budget. `exc.message` is left pending for retry().
        """
        self._validate(conversation_id, sender_id, body)

        async with self.lock_for(conversation_id):
            if conversation_id not in self._last_id:
                # Every committed message has passed through the index
                self.seed(conversation_id, self._index.last_message_id(conversation_id))

            message = Message(
                id=self._last_id[conversation_id] + 1,
                conversation_id=conversation_id,
                sender_id=sender_id,
                body=body,
                sent_at=self._stamp(conversation_id),
                delivery=DeliveryState.PENDING,
            )
            self._last_id[conversation_id] = message.id
            self._pending.setdefault(conversation_id, []).append(message)
            logger.info(f"Message allocated: conversation={conversation_id}, id={message.id}, sender={sender_id}")

            try:
                sent = await self._flush(conversation_id)
            except PersistenceUnavailable as e:
                record_send_outcome("persistence_unavailable")
                logger.error(f"Message left pending: conversation={conversation_id}, id={message.id}")
                raise PersistenceUnavailable(str(e), message=message) from e

        record_send_outcome("sent")
        return sent[-1]

    async def retry(self, conversation_id: str) -> list[Message]:
        """
        Persist the conversation's pending messages, oldest first.

        Returns the messages that reached `sent`. Raises PersistenceUnavailable
        for the first message that still cannot be stored.
        """
        if conversation_id not in self._index:
            raise ConversationNotFound(conversation_id)
        async with self.lock_for(conversation_id):
            try:
                return await self._flush(conversation_id)
            except PersistenceUnavailable as e:
                pending = self._pending.get(conversation_id)
                raise PersistenceUnavailable(str(e), message=pending[0] if pending else None) from e

    async def history(self, conversation_id: str, after_id: Optional[int] = None) -> list[Message]:
        if conversation_id not in self._index:
            raise ConversationNotFound(conversation_id)
        return await asyncio.to_thread(self._store.read_all, conversation_id, after_id)

    async def mark_delivered(self, viewer_id: str, message: Message) -> bool:
        """
        Record that a participant other than the sender observed a message.
        """
        if viewer_id == message.sender_id:
            return False
        if viewer_id not in self._index.participants(message.conversation_id):
            return False
        try:
            changed = await asyncio.to_thread(
                self._store.update_delivery_state,
                message.conversation_id,
                message.id,
                DeliveryState.DELIVERED,
            )
        except PersistenceUnavailable as e:
            logger.warning(
                f"Could not record delivery: conversation={message.conversation_id}, "
                f"id={message.id}: {e}"
            )
            return False
        if changed:
            logger.debug(f"Message delivered: conversation={message.conversation_id}, id={message.id}, viewer={viewer_id}")
        return changed

    def _stamp(self, conversation_id: str) -> datetime:
        # Timestamps never go backwards within a conversation
        now = self._clock()
        previous = self._last_sent_at.get(conversation_id) or self._index.last_activity(conversation_id)
        if previous is not None and now < previous:
            now = previous
        self._last_sent_at[conversation_id] = now
        return now

    async def _flush(self, conversation_id: str) -> list[Message]:
        """Persist pending messages in id order. Caller holds the conversation lock."""
        pending = self._pending.get(conversation_id, [])
        sent = []
        while pending:
            message = pending[0]
            await self._call_with_retry(self._store.append, conversation_id, message)
            pending.pop(0)
            committed = message.model_copy(update={"delivery": DeliveryState.SENT})
            self._commit(committed)
            sent.append(committed)
        return sent

    def _commit(self, message: Message) -> None:
        affected = self._index.on_message(message)
        self._hub.publish_message(message)
        for user_id in sorted(affected):
            self._hub.publish_conversation_list(user_id, self._index.list(user_id))
        logger.info(f"Message sent: conversation={message.conversation_id}, id={message.id}")

    async def _call_with_retry(self, func, *args):
        """
        Run a blocking store call on a worker thread, retrying
        PersistenceUnavailable with exponential backoff.
        """
        attempt = 1
        while True:
            try:
                return await asyncio.to_thread(func, *args)
            except PersistenceUnavailable as e:
                if attempt >= self._max_attempts:
                    logger.error(f"Persistence failed after {attempt} attempts: {e}")
                    raise
                delay = min(self._base_delay * 2 ** (attempt - 1), self._max_delay)
                record_persistence_retry()
                logger.warning(f"Persistence attempt {attempt} failed, retrying in {delay:.3f}s: {e}")
                await self._sleep(delay)
                attempt += 1
