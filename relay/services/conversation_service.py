"""
Conversation aggregation.

Builds the conversation list of a user from the raw message log: one row per
peer with the most recent message and the number of unread messages received
from that peer.

The whole rollup is a single SELECT. The partner of each message is computed
in SQL, `row_number()` over (partner ordered by created_at desc, id desc)
picks the last message, and a windowed `sum()` over the same partition counts
the unread ones. Both values therefore come from one snapshot, and rows that
share a timestamp always resolve the same way.
"""
import logging
from typing import List, Optional

from sqlalchemy import and_, case, func, or_
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from relay.core.exceptions import TransientError
from relay.models.chat import ChatMessage, MessageStatus
from relay.models.user import User
from relay.schemas.chat import ConversationSummary, LastMessage

logger = logging.getLogger(__name__)


class ConversationAggregator:
    """Derives per-peer conversation summaries for a requesting user."""

    def __init__(self, db: Session):
        self.db = db

    def _summary_statement(self, requester_id: int):
        partner = case(
            (ChatMessage.sender_id == requester_id, ChatMessage.receiver_id),
            else_=ChatMessage.sender_id
        )
        unread_flag = case(
            (and_(ChatMessage.receiver_id == requester_id, ChatMessage.read == False), 1),  # noqa: E712
            else_=0
        )

        ranked = (
            select(
                ChatMessage.id.label("message_id"),
                ChatMessage.sender_id.label("sender_id"),
                ChatMessage.text.label("text"),
                ChatMessage.image.label("image"),
                ChatMessage.read.label("read"),
                ChatMessage.delivered.label("delivered"),
                ChatMessage.created_at.label("created_at"),
                partner.label("partner_id"),
                func.row_number().over(
                    partition_by=partner,
                    order_by=(ChatMessage.created_at.desc(), ChatMessage.id.desc())
                ).label("position"),
                func.sum(unread_flag).over(partition_by=partner).label("unread_count"),
            )
            .where(
                or_(
                    ChatMessage.sender_id == requester_id,
                    ChatMessage.receiver_id == requester_id
                )
            )
            .subquery("ranked")
        )

        return (
            select(
                ranked.c.message_id,
                ranked.c.sender_id,
                ranked.c.text,
                ranked.c.image,
                ranked.c.read,
                ranked.c.delivered,
                ranked.c.created_at,
                ranked.c.partner_id,
                ranked.c.unread_count,
                User.username,
                User.full_name,
                User.profile_pic,
            )
            .join(User, User.id == ranked.c.partner_id)
            .where(ranked.c.position == 1)
            .order_by(ranked.c.created_at.desc(), ranked.c.message_id.desc())
        )

    def list_conversations(self, requester_id: int, limit: Optional[int] = None) -> List[ConversationSummary]:
        """
        Return one summary per peer the requester has exchanged messages with,
        most recent conversation first. No messages yields an empty list.
        """
        statement = self._summary_statement(requester_id)
        if limit:
            statement = statement.limit(limit)

        try:
            rows = self.db.exec(statement).all()
        except OperationalError as e:
            logger.error(f"Message store unavailable while aggregating conversations: {e}")
            raise TransientError("Message store unavailable")

        summaries = []
        for row in rows:
            if row.read:
                status = MessageStatus.READ
            elif row.delivered:
                status = MessageStatus.DELIVERED
            else:
                status = MessageStatus.SENT

            summaries.append(ConversationSummary(
                peer_id=row.partner_id,
                username=row.username,
                full_name=row.full_name,
                profile_pic=row.profile_pic,
                last_message=LastMessage(
                    id=row.message_id,
                    text=row.text,
                    image=row.image,
                    created_at=row.created_at,
                    status=status,
                    is_from_me=row.sender_id == requester_id,
                ),
                unread_count=int(row.unread_count or 0),
            ))

        logger.debug(f"Aggregated {len(summaries)} conversations for user {requester_id}")
        return summaries


def total_unread(summaries: List[ConversationSummary]) -> int:
    """Sum of unread messages across conversation summaries."""
    return sum(summary.unread_count for summary in summaries)
