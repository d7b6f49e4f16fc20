"""
In-memory index of conversations per user.

The index is fed by message events and can always be rebuilt by replaying
the message store, so it holds no state of its own that must survive a
restart.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from chatcore.errors import ConversationNotFound, InvalidParticipant
from chatcore.schemas import Conversation, ConversationType, Message, MessageSummary

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    conversation: Conversation
    last_message: Optional[MessageSummary] = None
    # user id -> newest message id at the time the user archived
    archived_through: dict = field(default_factory=dict)

    @property
    def participants(self) -> list[str]:
        return self.conversation.participants

    @property
    def last_id(self) -> int:
        return self.last_message.message_id if self.last_message else 0

    def is_archived(self, user_id: str) -> bool:
        # Any message newer than the archive point brings the conversation back
        through = self.archived_through.get(user_id)
        return through is not None and through >= self.last_id


class ConversationIndex:
    """
    Ordered conversation list per user.

    A conversation shows up in its participants' lists once it has at least
    one message. Lists are ordered by last activity (newest first), ties
    broken by conversation id ascending.
    """

    def __init__(self):
        self._entries: dict[str, _Entry] = {}
        self._by_user: dict[str, set[str]] = {}
        self._names: dict[str, str] = {}

    def register(
        self,
        conversation: Conversation,
        archived_through: Optional[dict[str, int]] = None,
        names: Optional[dict[str, str]] = None,
    ) -> None:
        """Make a conversation and its participants known. Idempotent."""
        if names:
            self._names.update(names)
        if conversation.id in self._entries:
            return
        self._entries[conversation.id] = _Entry(
            conversation=conversation.model_copy(update={"last_message": None, "last_activity": None}),
            archived_through=dict(archived_through or {}),
        )
        for user_id in conversation.participants:
            self._by_user.setdefault(user_id, set()).add(conversation.id)

    def set_name(self, user_id: str, display_name: str) -> None:
        self._names[user_id] = display_name

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._entries

    def _entry(self, conversation_id: str) -> _Entry:
        entry = self._entries.get(conversation_id)
        if entry is None:
            raise ConversationNotFound(conversation_id)
        return entry

    def participants(self, conversation_id: str) -> list[str]:
        return list(self._entry(conversation_id).participants)

    def last_message_id(self, conversation_id: str) -> int:
        last = self._entry(conversation_id).last_message
        return last.message_id if last else 0

    def last_activity(self, conversation_id: str):
        last = self._entry(conversation_id).last_message
        return last.sent_at if last else None

    def on_message(self, message: Message) -> set[str]:
        """
        Apply a message event.

        Applying a message that is not newer than the conversation's current
        newest message changes nothing, so replays and duplicate events are
        harmless.

        Returns:
            The users whose conversation list changed (empty for a no-op).
        """
        entry = self._entry(message.conversation_id)
        last = entry.last_message
        if last is not None and message.id <= last.message_id:
            logger.debug(
                f"Ignoring stale message event: conversation={message.conversation_id}, "
                f"id={message.id}, newest={last.message_id}"
            )
            return set()

        entry.last_message = MessageSummary(
            message_id=message.id,
            sender_id=message.sender_id,
            body=message.body,
            sent_at=message.sent_at,
        )
        return set(entry.participants)

    def archive(self, conversation_id: str, user_id: str, archived: bool = True) -> bool:
        """
        Soft-archive a conversation for one participant, up to its current
        newest message. Returns True if it changed.
        """
        entry = self._entry(conversation_id)
        if user_id not in entry.participants:
            raise InvalidParticipant(conversation_id, user_id)
        if archived == entry.is_archived(user_id):
            return False
        if archived:
            entry.archived_through[user_id] = entry.last_id
        else:
            entry.archived_through.pop(user_id, None)
        return True

    def archived_through(self, conversation_id: str, user_id: str) -> Optional[int]:
        entry = self._entry(conversation_id)
        if not entry.is_archived(user_id):
            return None
        return entry.archived_through[user_id]

    def _view(self, entry: _Entry, user_id: str) -> Conversation:
        conversation = entry.conversation
        title = conversation.title
        if conversation.type == ConversationType.DIRECT:
            others = [uid for uid in entry.participants if uid != user_id]
            if others:
                title = self._names.get(others[0], others[0])
        return conversation.model_copy(update={
            "title": title,
            "last_message": entry.last_message,
            "last_activity": entry.last_message.sent_at if entry.last_message else None,
            "archived": entry.is_archived(user_id),
        })

    def get(self, conversation_id: str, user_id: str) -> Conversation:
        return self._view(self._entry(conversation_id), user_id)

    def search(self, user_id: str, text: str, include_archived: bool = False) -> list[Conversation]:
        """
        Case-insensitive match on title, participant names and last message.
        """
        needle = text.strip().lower()
        if not needle:
            return self.list(user_id, include_archived=include_archived)

        result = []
        for conversation in self.list(user_id, include_archived=include_archived):
            haystack = [conversation.title or ""]
            haystack += [self._names.get(uid, uid) for uid in conversation.participants if uid != user_id]
            if conversation.last_message is not None:
                haystack.append(conversation.last_message.body)
            if any(needle in value.lower() for value in haystack):
                result.append(conversation)
        return result

    def list(self, user_id: str, include_archived: bool = False) -> list[Conversation]:
        """
        Conversations of a user, newest activity first.
        """
        entries = [
            self._entries[cid]
            for cid in self._by_user.get(user_id, ())
            if self._entries[cid].last_message is not None
        ]
        if not include_archived:
            entries = [e for e in entries if not e.is_archived(user_id)]

        # Two stable sorts: id ascending, then activity descending
        entries.sort(key=lambda e: e.conversation.id)
        entries.sort(key=lambda e: e.last_message.sent_at, reverse=True)
        return [self._view(e, user_id) for e in entries]
