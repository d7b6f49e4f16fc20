"""
Error taxonomy for the conversation delivery core.

Validation errors (InvalidParticipant, EmptyBody, ConversationNotFound,
UserNotFound, InvalidConversation) are raised straight to the caller.
PersistenceUnavailable is transient: the pipeline retries it before
surfacing it. SubscriptionClosed is raised once to a subscriber whose
stream was terminated by the host.
"""


class ChatCoreError(Exception):
    """Base class for all core errors."""


class InvalidParticipant(ChatCoreError):
    def __init__(self, conversation_id: str, user_id: str):
        super().__init__(f"user {user_id!r} is not a participant of conversation {conversation_id!r}")
        self.conversation_id = conversation_id
        self.user_id = user_id


class EmptyBody(ChatCoreError):
    def __init__(self):
        super().__init__("message body must not be empty")


class ConversationNotFound(ChatCoreError):
    def __init__(self, conversation_id: str):
        super().__init__(f"conversation {conversation_id!r} not found")
        self.conversation_id = conversation_id


class UserNotFound(ChatCoreError):
    def __init__(self, user_id: str):
        super().__init__(f"user {user_id!r} not found")
        self.user_id = user_id


class InvalidConversation(ChatCoreError):
    """Raised for a participant set that cannot form a conversation."""


class PersistenceUnavailable(ChatCoreError):
    """
    The durable store could not acknowledge a write.

    When raised out of the pipeline, `message` is the message left in
    `pending` state for a later explicit retry.
    """

    def __init__(self, detail: str = "persistence unavailable", message=None):
        super().__init__(detail)
        self.message = message


class SubscriptionClosed(ChatCoreError):
    def __init__(self, topic: str):
        super().__init__(f"subscription {topic!r} closed by host")
        self.topic = topic
