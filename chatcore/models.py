"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic domain and request/response schemas, see schemas.py.
"""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from chatcore.storage import Base


class UserRecord(Base):
    """
    Directory entry for a user. Rows are never deleted, only deactivated.

    Table: users
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True, index=True)
    display_name = Column(String, nullable=False)
    avatar_url = Column(String, nullable=True)  # NULL = default avatar
    presence = Column(String, nullable=False, default="offline")
    last_seen = Column(DateTime, nullable=True)  # UTC
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False)


class ConversationRecord(Base):
    """
    Table: conversations
    direct_key is "<user_a>|<user_b>" (sorted) for direct conversations and
    enforces one direct conversation per user pair.
    """
    __tablename__ = "conversations"

    id = Column(String, primary_key=True, index=True)
    type = Column(String, nullable=False)
    title = Column(String, nullable=True)
    direct_key = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime, nullable=False)


class ParticipantRecord(Base):
    """
    Table: conversation_participants
    Primary Key: (conversation_id, user_id)
    archived_through holds the newest message id when the user archived the
    conversation; NULL means not archived.
    """
    __tablename__ = "conversation_participants"

    conversation_id = Column(String, ForeignKey("conversations.id"), primary_key=True)
    user_id = Column(String, ForeignKey("users.id"), primary_key=True, index=True)
    archived_through = Column(Integer, nullable=True)


class MessageRecord(Base):
    """
    Table: messages
    Primary Key: (conversation_id, seq), re-appending the same message is a
    duplicate and is acknowledged without a second row.
    """
    __tablename__ = "messages"

    conversation_id = Column(String, ForeignKey("conversations.id"), primary_key=True)
    seq = Column(Integer, primary_key=True)
    sender_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    body = Column(Text, nullable=False)
    sent_at = Column(DateTime, nullable=False, index=True)  # UTC
    delivery = Column(String, nullable=False)
