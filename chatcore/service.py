"""
ChatCore: the entry point a client shell talks to.

Wires the directory and message store to the conversation index, the
delivery pipeline, the presence tracker and the subscription hub. Every call
takes the acting user explicitly; there is no ambient session state.
"""

import asyncio
import contextlib
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Optional

from chatcore.config import Settings
from chatcore.errors import ConversationNotFound, InvalidParticipant, UserNotFound
from chatcore.hub import Subscription, SubscriptionHub
from chatcore.index import ConversationIndex
from chatcore.pipeline import MessageDeliveryPipeline, MessageStore
from chatcore.presence import PresenceTracker
from chatcore.schemas import Conversation, Message, Presence, User
from chatcore.storage import SqlDirectory, SqlMessageStore, utcnow

logger = logging.getLogger(__name__)


class ChatCore:
    def __init__(
        self,
        directory: SqlDirectory,
        store: MessageStore,
        heartbeat_timeout: float = 30.0,
        sweep_interval: float = 1.0,
        persist_max_attempts: int = 5,
        persist_base_delay: float = 0.05,
        persist_max_delay: float = 2.0,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.directory = directory
        self.store = store
        self.hub = SubscriptionHub()
        self.index = ConversationIndex()
        self.pipeline = MessageDeliveryPipeline(
            store,
            self.index,
            self.hub,
            max_attempts=persist_max_attempts,
            base_delay=persist_base_delay,
            max_delay=persist_max_delay,
            clock=clock,
            sleep=sleep,
        )
        self.presence = PresenceTracker(
            self.hub,
            timeout=heartbeat_timeout,
            sweep_interval=sweep_interval,
            clock=clock,
            monotonic=monotonic,
            on_transition=self._store_presence,
        )
        self._active_users: set[str] = set()
        self._sweeper: Optional[asyncio.Task] = None
        self._presence_locks: dict[str, asyncio.Lock] = {}

    @classmethod
    def from_settings(cls, settings: Settings, session_factory) -> "ChatCore":
        return cls(
            SqlDirectory(session_factory),
            SqlMessageStore(session_factory),
            heartbeat_timeout=settings.HEARTBEAT_TIMEOUT_SECONDS,
            sweep_interval=settings.PRESENCE_SWEEP_INTERVAL_SECONDS,
            persist_max_attempts=settings.PERSIST_MAX_ATTEMPTS,
            persist_base_delay=settings.PERSIST_BASE_DELAY_SECONDS,
            persist_max_delay=settings.PERSIST_MAX_DELAY_SECONDS,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, sweep: bool = True) -> None:
        await self.warm_up()
        if sweep and self._sweeper is None:
            self._sweeper = asyncio.create_task(self.presence.run())

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        self.hub.close()

    async def warm_up(self) -> None:
        """
        Rebuild the in-memory index from the directory and the message store.
        Safe to call more than once.
        """
        conversations = await asyncio.to_thread(self.directory.all_conversations)
        users: dict[str, User] = {}
        for conversation, archived_through in conversations:
            names = await asyncio.to_thread(self._names_for, conversation.participants, users)
            self.index.register(conversation, archived_through=archived_through, names=names)
            await self._load_latest(conversation.id)
        for user in users.values():
            if user.active:
                self._active_users.add(user.id)
            self.presence.seed(user.id, user.last_seen)
        logger.info(f"Conversation index rebuilt: {len(conversations)} conversations, {len(users)} users")

    def _names_for(self, user_ids: Iterable[str], cache: dict[str, User]) -> dict[str, str]:
        names = {}
        for user_id in user_ids:
            user = cache.get(user_id)
            if user is None:
                try:
                    user = cache[user_id] = self.directory.resolve_user(user_id)
                except UserNotFound:
                    logger.warning(f"Conversation participant missing from directory: {user_id}")
                    continue
            names[user_id] = user.display_name
        return names

    # =========================================================================
    # Users
    # =========================================================================

    def resolve_user(self, user_id: str) -> User:
        """Directory profile with the live presence state."""
        user = self.directory.resolve_user(user_id)
        presence = self.presence.get(user_id)
        return user.model_copy(update={
            "presence": presence.state,
            "last_seen": presence.last_seen or user.last_seen,
        })

    async def register_user(self, user_id: str, display_name: str, avatar_url: Optional[str] = None) -> User:
        user = await asyncio.to_thread(self.directory.register_user, user_id, display_name, avatar_url)
        self._active_users.add(user_id)
        self.index.set_name(user_id, user.display_name)
        self.presence.seed(user_id, user.last_seen)
        return user

    async def deactivate_user(self, user_id: str) -> User:
        user = await asyncio.to_thread(self.directory.deactivate_user, user_id)
        self._active_users.discard(user_id)
        await self.presence.disconnect(user_id)
        return user

    async def _require_active_user(self, user_id: str) -> None:
        if user_id in self._active_users:
            return
        user = await asyncio.to_thread(self.directory.resolve_user, user_id)
        if not user.active:
            raise UserNotFound(user_id)
        self._active_users.add(user_id)

    # =========================================================================
    # Conversations
    # =========================================================================

    async def open_direct(self, user_id: str, other_user_id: str) -> tuple[Conversation, bool]:
        conversation, is_new = await asyncio.to_thread(self.directory.open_direct, user_id, other_user_id)
        await self._register(conversation)
        return self.index.get(conversation.id, user_id), is_new

    async def create_group(
        self, creator_id: str, participant_ids: Iterable[str], title: Optional[str] = None
    ) -> Conversation:
        conversation = await asyncio.to_thread(self.directory.create_group, creator_id, list(participant_ids), title)
        await self._register(conversation)
        return self.index.get(conversation.id, creator_id)

    async def _register(self, conversation: Conversation) -> None:
        names = await asyncio.to_thread(self._names_for, conversation.participants, {})
        known = conversation.id in self.index
        self.index.register(conversation, names=names)
        if not known:
            await self._load_latest(conversation.id)

    async def _load_latest(self, conversation_id: str) -> None:
        """Feed the newest stored message to the index and seed the sequence."""
        last_id = await asyncio.to_thread(self.store.last_id, conversation_id)
        if last_id:
            for message in await asyncio.to_thread(self.store.read_all, conversation_id, last_id - 1):
                self.index.on_message(message)
        self.pipeline.seed(conversation_id, last_id)

    def list_conversations(self, user_id: str, include_archived: bool = False) -> list[Conversation]:
        return self.index.list(user_id, include_archived=include_archived)

    def search_conversations(self, user_id: str, text: str, include_archived: bool = False) -> list[Conversation]:
        return self.index.search(user_id, text, include_archived=include_archived)

    async def archive(self, conversation_id: str, user_id: str, archived: bool = True) -> Conversation:
        if self.index.archive(conversation_id, user_id, archived):
            through = self.index.archived_through(conversation_id, user_id)
            await asyncio.to_thread(self.directory.set_archived, conversation_id, user_id, through)
            self.hub.publish_conversation_list(user_id, self.index.list(user_id))
        return self.index.get(conversation_id, user_id)

    # =========================================================================
    # Messages
    # =========================================================================

    async def send(self, conversation_id: str, sender_id: str, body: str) -> Message:
        return await self.pipeline.send(conversation_id, sender_id, body)

    async def retry(self, conversation_id: str) -> list[Message]:
        return await self.pipeline.retry(conversation_id)

    async def history(self, conversation_id: str, after_id: Optional[int] = None) -> list[Message]:
        return await self.pipeline.history(conversation_id, after_id)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe_conversation_list(self, user_id: str) -> Subscription:
        return self.hub.subscribe_conversation_list(user_id, self.index.list(user_id))

    async def subscribe_conversation(
        self,
        conversation_id: str,
        viewer_id: Optional[str] = None,
        after_id: Optional[int] = None,
    ) -> Subscription:
        """
        Stream new messages of a conversation.

        With `viewer_id`, messages observed by that participant are marked
        delivered. With `after_id`, stored messages newer than it are replayed
        first, with no gap before the live stream.
        """
        if conversation_id not in self.index:
            raise ConversationNotFound(conversation_id)
        if viewer_id is not None and viewer_id not in self.index.participants(conversation_id):
            raise InvalidParticipant(conversation_id, viewer_id)
        if after_id is None:
            return self.hub.subscribe_conversation(
                conversation_id, viewer_id=viewer_id, on_observed=self.pipeline.mark_delivered
            )
        # Holding the conversation lock keeps sends out between replay and registration
        async with self.pipeline.lock_for(conversation_id):
            backlog = await self.pipeline.history(conversation_id, after_id)
            return self.hub.subscribe_conversation(
                conversation_id,
                viewer_id=viewer_id,
                on_observed=self.pipeline.mark_delivered,
                backlog=backlog,
            )

    def subscribe_presence(self, user_id: str) -> Subscription:
        return self.hub.subscribe_presence(user_id, self.presence.get(user_id))

    # =========================================================================
    # Presence
    # =========================================================================

    async def connect(self, user_id: str) -> Presence:
        await self._require_active_user(user_id)
        return await self.presence.connect(user_id)

    async def heartbeat(self, user_id: str) -> Presence:
        await self._require_active_user(user_id)
        return await self.presence.heartbeat(user_id)

    async def disconnect(self, user_id: str) -> Presence:
        return await self.presence.disconnect(user_id)

    def presence_of(self, user_id: str) -> Presence:
        return self.presence.get(user_id)

    async def _store_presence(self, presence: Presence) -> None:
        # Writes for one user land in transition order
        lock = self._presence_locks.get(presence.user_id)
        if lock is None:
            lock = self._presence_locks[presence.user_id] = asyncio.Lock()
        async with lock:
            await asyncio.to_thread(self.directory.set_presence, presence.user_id, presence.state, presence.last_seen)
