import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import create_engine, inspect, text, func
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.pool import StaticPool

from chatcore.errors import InvalidConversation, PersistenceUnavailable, UserNotFound
from chatcore.schemas import (
    Conversation,
    ConversationType,
    DeliveryState,
    Message,
    PresenceState,
    User,
    normalize_avatar,
)

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("users", "conversations", "conversation_participants", "messages")


def create_db_engine(database_url: str) -> Engine:
    """
    Create a SQLAlchemy engine.

    check_same_thread=False is required for SQLite because blocking store
    calls run on worker threads. In-memory SQLite shares one connection.
    """
    kwargs = {"echo": False}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {engine.url}")
    try:
        # Import models to register them with Base.metadata
        from chatcore import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health(session_factory: sessionmaker) -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with session_factory() as db:
            db.execute(text("SELECT 1"))
            existing = set(inspect(db.get_bind()).get_table_names())
            missing = [name for name in REQUIRED_TABLES if name not in existing]
            if missing:
                logger.error(f"Database schema not applied, missing tables: {missing}")
                return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def direct_key(user_a: str, user_b: str) -> str:
    u1, u2 = sorted([user_a, user_b])
    return f"{u1}|{u2}"


# =============================================================================
# Message Store
# =============================================================================

class SqlMessageStore:
    """
    Durable message store backed by the `messages` table.

    append() is at-least-once safe: re-appending a message that is already
    stored (same conversation and sequence id) is acknowledged as a duplicate.
    Transient database failures surface as PersistenceUnavailable.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def append(self, conversation_id: str, message: Message) -> bool:
        """
        Persist a message.

        Returns:
            True if a new row was written, False for a duplicate append.
        """
        from chatcore.models import MessageRecord

        # A stored row has been acknowledged, so a pending message lands as sent
        delivery = message.delivery
        if delivery == DeliveryState.PENDING:
            delivery = DeliveryState.SENT

        with self._session_factory() as db:
            try:
                db.add(MessageRecord(
                    conversation_id=conversation_id,
                    seq=message.id,
                    sender_id=message.sender_id,
                    body=message.body,
                    sent_at=_to_db_time(message.sent_at),
                    delivery=delivery.value,
                ))
                db.commit()
                logger.debug(f"Message stored: conversation={conversation_id}, id={message.id}")
                return True
            except IntegrityError:
                db.rollback()
                logger.info(f"Duplicate append acknowledged: conversation={conversation_id}, id={message.id}")
                return False
            except OperationalError as e:
                db.rollback()
                logger.warning(f"Message store unavailable: {e}")
                raise PersistenceUnavailable(str(e)) from e

    def read_all(self, conversation_id: str, after_id: Optional[int] = None) -> list[Message]:
        """Return stored messages of a conversation in sequence order."""
        from chatcore.models import MessageRecord

        try:
            with self._session_factory() as db:
                query = db.query(MessageRecord).filter(MessageRecord.conversation_id == conversation_id)
                if after_id is not None:
                    query = query.filter(MessageRecord.seq > after_id)
                rows = query.order_by(MessageRecord.seq.asc()).all()
                return [_to_message(row) for row in rows]
        except OperationalError as e:
            raise PersistenceUnavailable(str(e)) from e

    def last_id(self, conversation_id: str) -> int:
        """Highest stored sequence id of a conversation, 0 when empty."""
        from chatcore.models import MessageRecord

        try:
            with self._session_factory() as db:
                value = (
                    db.query(func.max(MessageRecord.seq))
                    .filter(MessageRecord.conversation_id == conversation_id)
                    .scalar()
                )
                return value or 0
        except OperationalError as e:
            raise PersistenceUnavailable(str(e)) from e

    def update_delivery_state(self, conversation_id: str, message_id: int, state: DeliveryState) -> bool:
        """
        Move a stored message to `state`. Returns False if nothing changed.
        """
        from chatcore.models import MessageRecord

        try:
            with self._session_factory() as db:
                updated = (
                    db.query(MessageRecord)
                    .filter(
                        MessageRecord.conversation_id == conversation_id,
                        MessageRecord.seq == message_id,
                        MessageRecord.delivery != state.value,
                    )
                    .update({MessageRecord.delivery: state.value})
                )
                db.commit()
                return updated > 0
        except OperationalError as e:
            raise PersistenceUnavailable(str(e)) from e


def _to_message(row) -> Message:
    return Message(
        id=row.seq,
        conversation_id=row.conversation_id,
        sender_id=row.sender_id,
        body=row.body,
        sent_at=_as_utc(row.sent_at),
        delivery=DeliveryState(row.delivery),
    )


# =============================================================================
# Directory Repository Functions
# =============================================================================

def get_user(db: Session, user_id: str):
    from chatcore.models import UserRecord

    return db.query(UserRecord).filter(UserRecord.id == user_id).first()


def register_user(db: Session, user_id: str, display_name: str, avatar_url: Optional[str] = None):
    """
    Create the user on first authentication (idempotent).

    A known user keeps its presence; profile fields are refreshed and a
    deactivated user is reactivated.
    """
    from chatcore.models import UserRecord

    record = get_user(db, user_id)
    if record is None:
        record = UserRecord(
            id=user_id,
            display_name=display_name,
            avatar_url=normalize_avatar(avatar_url),
            presence=PresenceState.OFFLINE.value,
            active=True,
            created_at=_to_db_time(utcnow()),
        )
        db.add(record)
        logger.info(f"User registered: {user_id}")
    else:
        record.display_name = display_name
        record.avatar_url = normalize_avatar(avatar_url)
        record.active = True
    db.commit()
    db.refresh(record)
    return record


def deactivate_user(db: Session, user_id: str):
    record = get_user(db, user_id)
    if record is None:
        raise UserNotFound(user_id)
    record.active = False
    db.commit()
    db.refresh(record)
    logger.info(f"User deactivated: {user_id}")
    return record


def set_presence(db: Session, user_id: str, state: PresenceState, last_seen: Optional[datetime]) -> None:
    record = get_user(db, user_id)
    if record is None:
        logger.warning(f"Presence change for unknown user: {user_id}")
        return
    record.presence = state.value
    if last_seen is not None:
        record.last_seen = _to_db_time(last_seen)
    db.commit()


def create_conversation(
    db: Session,
    conversation_type: ConversationType,
    participants: Iterable[str],
    title: Optional[str] = None,
    key: Optional[str] = None,
):
    from chatcore.models import ConversationRecord, ParticipantRecord

    record = ConversationRecord(
        id=str(uuid.uuid4()),
        type=conversation_type.value,
        title=title,
        direct_key=key,
        created_at=_to_db_time(utcnow()),
    )
    db.add(record)
    for user_id in participants:
        db.add(ParticipantRecord(conversation_id=record.id, user_id=user_id))
    db.commit()
    db.refresh(record)
    logger.info(f"Conversation created: id={record.id}, type={conversation_type.value}")
    return record


def get_conversation_by_key(db: Session, key: str):
    from chatcore.models import ConversationRecord

    return db.query(ConversationRecord).filter(ConversationRecord.direct_key == key).first()


def get_participants(db: Session, conversation_id: str) -> list:
    from chatcore.models import ParticipantRecord

    return (
        db.query(ParticipantRecord)
        .filter(ParticipantRecord.conversation_id == conversation_id)
        .order_by(ParticipantRecord.user_id.asc())
        .all()
    )


def set_archived(db: Session, conversation_id: str, user_id: str, through: Optional[int]) -> bool:
    """Archive up to message id `through`, or un-archive with None."""
    from chatcore.models import ParticipantRecord

    updated = (
        db.query(ParticipantRecord)
        .filter(
            ParticipantRecord.conversation_id == conversation_id,
            ParticipantRecord.user_id == user_id,
        )
        .update({ParticipantRecord.archived_through: through})
    )
    db.commit()
    return updated > 0


def _to_conversation(db: Session, record) -> Conversation:
    return Conversation(
        id=record.id,
        type=ConversationType(record.type),
        participants=[p.user_id for p in get_participants(db, record.id)],
        title=record.title,
    )


def _to_user(record) -> User:
    return User(
        id=record.id,
        display_name=record.display_name,
        avatar_url=record.avatar_url,
        presence=PresenceState(record.presence),
        last_seen=_as_utc(record.last_seen),
        active=record.active,
    )


class SqlDirectory:
    """
    Users and conversations, as seen by the core.

    Wraps the repository functions above with one session per call.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def resolve_user(self, user_id: str) -> User:
        with self._session_factory() as db:
            record = get_user(db, user_id)
            if record is None:
                raise UserNotFound(user_id)
            return _to_user(record)

    def register_user(self, user_id: str, display_name: str, avatar_url: Optional[str] = None) -> User:
        with self._session_factory() as db:
            return _to_user(register_user(db, user_id, display_name, avatar_url))

    def deactivate_user(self, user_id: str) -> User:
        with self._session_factory() as db:
            return _to_user(deactivate_user(db, user_id))

    def set_presence(self, user_id: str, state: PresenceState, last_seen: Optional[datetime]) -> None:
        with self._session_factory() as db:
            set_presence(db, user_id, state, last_seen)

    def open_direct(self, user_id: str, other_user_id: str) -> tuple[Conversation, bool]:
        """
        Get or create the direct conversation between two users.

        Returns:
            Tuple of (conversation, is_new)
        """
        if user_id == other_user_id:
            raise InvalidConversation("a direct conversation needs two different users")
        key = direct_key(user_id, other_user_id)
        with self._session_factory() as db:
            for uid in (user_id, other_user_id):
                if get_user(db, uid) is None:
                    raise UserNotFound(uid)
            existing = get_conversation_by_key(db, key)
            if existing is not None:
                return _to_conversation(db, existing), False
            try:
                record = create_conversation(
                    db, ConversationType.DIRECT, sorted([user_id, other_user_id]), key=key
                )
            except IntegrityError:
                # Lost a race with a concurrent open_direct for the same pair
                db.rollback()
                return _to_conversation(db, get_conversation_by_key(db, key)), False
            return _to_conversation(db, record), True

    def create_group(self, creator_id: str, participant_ids: Iterable[str], title: Optional[str] = None) -> Conversation:
        members = sorted(set(participant_ids) | {creator_id})
        if len(members) < 2:
            raise InvalidConversation("a group needs at least two participants")
        with self._session_factory() as db:
            for uid in members:
                if get_user(db, uid) is None:
                    raise UserNotFound(uid)
            record = create_conversation(db, ConversationType.GROUP, members, title=title)
            return _to_conversation(db, record)

    def set_archived(self, conversation_id: str, user_id: str, through: Optional[int]) -> bool:
        with self._session_factory() as db:
            return set_archived(db, conversation_id, user_id, through)

    def all_conversations(self) -> list[tuple[Conversation, dict[str, int]]]:
        """
        Every conversation with {user_id: archived_through} for participants
        Used to rebuild the conversation index at startup.
        """
        from chatcore.models import ConversationRecord

        result = []
        with self._session_factory() as db:
            for record in db.query(ConversationRecord).order_by(ConversationRecord.id.asc()).all():
                participants = get_participants(db, record.id)
                conversation = Conversation(
                    id=record.id,
                    type=ConversationType(record.type),
                    participants=[p.user_id for p in participants],
                    title=record.title,
                )
                archived = {p.user_id: p.archived_through for p in participants if p.archived_through is not None}
                result.append((conversation, archived))
        return result
