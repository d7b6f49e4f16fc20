"""
Pydantic schemas for the core's domain objects and the HTTP surface.

This module contains:
- Domain models (User, Conversation, Message, Presence) passed between
  the core components and emitted on subscriptions
- Request models for incoming data validation
- Response models for API responses
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Domain Enums
# =============================================================================

class PresenceState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class ConversationType(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


class DeliveryState(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"


# =============================================================================
# Domain Models
# =============================================================================

def normalize_avatar(value: Optional[str]) -> Optional[str]:
    """Anything that is not an http(s) URL means "use the default avatar"."""
    if not value:
        return None
    value = value.strip()
    if not value.startswith(("http://", "https://")):
        return None
    return value


class User(BaseModel):
    """A user profile as resolved from the directory."""
    id: str = Field(..., min_length=1)
    display_name: str
    avatar_url: Optional[str] = Field(
        None,
        description="Avatar URL; null means the client shows its default avatar"
    )
    presence: PresenceState = PresenceState.OFFLINE
    last_seen: Optional[datetime] = None
    active: bool = True

    model_config = {"from_attributes": True}

    @field_validator("avatar_url")
    @classmethod
    def validate_avatar(cls, v: Optional[str]) -> Optional[str]:
        return normalize_avatar(v)


class Message(BaseModel):
    """
    A chat message.

    `id` is the per-conversation sequence number (1, 2, 3, ...). Everything
    except `delivery` is fixed once the message has been persisted.
    """
    id: int = Field(..., ge=1)
    conversation_id: str
    sender_id: str
    body: str
    sent_at: datetime
    delivery: DeliveryState = DeliveryState.PENDING

    model_config = {"from_attributes": True}


class MessageSummary(BaseModel):
    """The newest message of a conversation, as shown in the conversation list."""
    message_id: int
    sender_id: str
    body: str
    sent_at: datetime


class Conversation(BaseModel):
    id: str
    type: ConversationType
    participants: list[str]
    title: Optional[str] = None
    last_message: Optional[MessageSummary] = None
    last_activity: Optional[datetime] = None
    archived: bool = False


class Presence(BaseModel):
    user_id: str
    state: PresenceState
    last_seen: Optional[datetime] = None


# =============================================================================
# Pydantic Request Models
# =============================================================================

class RegisterUserRequest(BaseModel):
    id: str = Field(..., min_length=1, description="Stable user identifier")
    display_name: str = Field(..., min_length=1, max_length=100)
    avatar_url: Optional[str] = Field(None, description="Avatar URL, omit for default")


class OpenDirectRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    other_user_id: str = Field(..., min_length=1)


class CreateGroupRequest(BaseModel):
    creator_id: str = Field(..., min_length=1)
    participant_ids: list[str] = Field(..., min_length=1)
    title: Optional[str] = Field(None, max_length=100)


class SendMessageRequest(BaseModel):
    sender_id: str = Field(..., min_length=1)
    body: str = Field(..., max_length=4096, description="Message text")


class ArchiveRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class ConversationsListResponse(BaseModel):
    data: list[Conversation] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class MessagesListResponse(BaseModel):
    data: list[Message] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class RetryResponse(BaseModel):
    """Messages persisted by an explicit retry, and how many are still pending."""
    data: list[Message] = Field(default_factory=list)
    pending: int = Field(..., ge=0)
