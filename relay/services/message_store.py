"""
Message store: the durable, append-only log of direct messages.

Messages are only ever created and have their read/delivered flags flipped.
History is read with cursor pagination on the (created_at, id) key, which
stays stable while new rows are being inserted.
"""
import base64
import binascii
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlmodel import Session, select

from relay.core.config import settings
from relay.core.exceptions import NotFoundError, TransientError, ValidationError
from relay.models.chat import ChatMessage
from relay.utils.timeutils import MonotonicClock

logger = logging.getLogger(__name__)

IMAGE_URL_PATTERN = re.compile(r"^(https?|ftp)://[^\s/$.?#].[^\s]*$", re.IGNORECASE)

# Largest value a signed 64-bit INTEGER column can hold
MAX_MESSAGE_ID = 2 ** 63 - 1

# Shared by every store instance in the process so created_at never goes backwards
_clock = MonotonicClock()


def encode_cursor(message: ChatMessage) -> str:
    """Encode the (created_at, id) sort key of a message as an opaque cursor."""
    raw = f"{message.created_at.isoformat()}|{message.id}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> Tuple[datetime, int]:
    """Decode a cursor produced by encode_cursor."""
    try:
        padded = cursor + "=" * (-len(cursor) % 4)
        raw = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
        timestamp, message_id = raw.rsplit("|", 1)
        created_at = datetime.fromisoformat(timestamp)
        message_id = int(message_id)
    except (ValueError, UnicodeError, binascii.Error):
        raise ValidationError("Malformed pagination cursor", field="cursor")

    if not 0 < message_id <= MAX_MESSAGE_ID:
        raise ValidationError("Malformed pagination cursor", field="cursor")
    # Stored timestamps are naive UTC
    if created_at.tzinfo is not None:
        created_at = created_at.astimezone(timezone.utc).replace(tzinfo=None)
    return created_at, message_id


@dataclass
class MessageWindow:
    """A page of messages in ascending (created_at, id) order."""
    messages: List[ChatMessage] = field(default_factory=list)
    has_more: bool = False

    @property
    def oldest_cursor(self) -> Optional[str]:
        return encode_cursor(self.messages[0]) if self.messages else None

    @property
    def newest_cursor(self) -> Optional[str]:
        return encode_cursor(self.messages[-1]) if self.messages else None


class MessageStore:
    """Persistence operations on chat messages."""

    def __init__(self, db: Session):
        self.db = db

    def append(
        self,
        sender_id: int,
        receiver_id: int,
        text: Optional[str] = None,
        image: Optional[str] = None
    ) -> ChatMessage:
        """
        Persist a new message and return it with its id and created_at assigned.

        Raises:
            ValidationError: neither text nor image given, text too long,
                or image is not a URL.
        """
        text = text.strip() if text else None
        image = image.strip() if image else None

        if not text and not image:
            raise ValidationError("Message must contain either text or image", field="text")
        if text and len(text) > settings.message_max_length:
            raise ValidationError(
                f"Message text cannot exceed {settings.message_max_length} characters",
                field="text"
            )
        if image and not IMAGE_URL_PATTERN.match(image):
            raise ValidationError("Invalid image URL format", field="image")

        now = _clock.now()
        message = ChatMessage(
            sender_id=sender_id,
            receiver_id=receiver_id,
            text=text or None,
            image=image or None,
            created_at=now,
            updated_at=now,
        )

        self.db.add(message)
        self._commit()
        self.db.refresh(message)

        logger.debug(f"Stored message {message.id} from {sender_id} to {receiver_id}")
        return message

    def get(self, message_id: int) -> ChatMessage:
        """Get a message by id."""
        message = self.db.get(ChatMessage, message_id)
        if not message:
            raise NotFoundError(f"Message {message_id} not found")
        return message

    def mark_read(self, message_id: int) -> ChatMessage:
        """Mark a message as read. A read message is also delivered. Idempotent."""
        message = self.get(message_id)
        if message.read:
            return message

        message.read = True
        message.delivered = True
        message.updated_at = _clock.now()
        self.db.add(message)
        self._commit()
        self.db.refresh(message)
        return message

    def mark_delivered(self, message_id: int) -> ChatMessage:
        """Mark a message as delivered. Idempotent."""
        message = self.get(message_id)
        if message.delivered:
            return message

        message.delivered = True
        message.updated_at = _clock.now()
        self.db.add(message)
        self._commit()
        self.db.refresh(message)
        return message

    def mark_conversation_read(self, reader_id: int, peer_id: int) -> List[int]:
        """
        Mark every unread message from peer_id to reader_id as read.

        Returns:
            IDs of the messages that changed state.
        """
        # Report only the rows flipped by this statement
        result = self.db.exec(
            update(ChatMessage)
            .where(
                ChatMessage.sender_id == peer_id,
                ChatMessage.receiver_id == reader_id,
                ChatMessage.read == False  # noqa: E712
            )
            .values(read=True, delivered=True, updated_at=_clock.now())
            .returning(ChatMessage.id)
        )
        changed_ids = sorted(result.scalars().all())
        self._commit()
        return changed_ids

    def list_between(
        self,
        user_a: int,
        user_b: int,
        after: Optional[str] = None,
        before: Optional[str] = None,
        limit: Optional[int] = None
    ) -> MessageWindow:
        """
        List messages exchanged between two users, oldest first.

        Without a cursor the latest page is returned. `before` walks back into
        history and `after` catches up on messages newer than the cursor.
        """
        if after and before:
            raise ValidationError("Use either 'after' or 'before', not both", field="cursor")

        limit = limit or settings.messages_page_size
        limit = max(1, min(limit, settings.messages_max_page_size))

        statement = select(ChatMessage).where(
            or_(
                and_(ChatMessage.sender_id == user_a, ChatMessage.receiver_id == user_b),
                and_(ChatMessage.sender_id == user_b, ChatMessage.receiver_id == user_a)
            )
        )

        try:
            if after:
                created_at, message_id = decode_cursor(after)
                statement = statement.where(
                    or_(
                        ChatMessage.created_at > created_at,
                        and_(ChatMessage.created_at == created_at, ChatMessage.id > message_id)
                    )
                ).order_by(ChatMessage.created_at.asc(), ChatMessage.id.asc())
                rows = list(self.db.exec(statement.limit(limit + 1)).all())
                return MessageWindow(messages=rows[:limit], has_more=len(rows) > limit)

            if before:
                created_at, message_id = decode_cursor(before)
                statement = statement.where(
                    or_(
                        ChatMessage.created_at < created_at,
                        and_(ChatMessage.created_at == created_at, ChatMessage.id < message_id)
                    )
                )

            statement = statement.order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
            rows = list(self.db.exec(statement.limit(limit + 1)).all())
        except OperationalError as e:
            logger.error(f"Message store unavailable while listing messages: {e}")
            raise TransientError("Message store unavailable")

        page = rows[:limit]
        page.reverse()
        return MessageWindow(messages=page, has_more=len(rows) > limit)

    def _commit(self):
        try:
            self.db.commit()
        except OperationalError as e:
            self.db.rollback()
            logger.error(f"Message store unavailable: {e}")
            raise TransientError("Message store unavailable")
        except SQLAlchemyError:
            self.db.rollback()
            raise
