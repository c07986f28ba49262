"""
Client-side reconciliation of the open conversation.

The view of a conversation is fed by three independent streams: the bulk
fetch when the conversation is opened, optimistic entries created when the
user sends, and messages pushed over the realtime channel. MessageReconciler
is the only writer of the view and keeps it sorted by (created_at, id).

Every send is tracked as an OutgoingMessage going from PENDING to CONFIRMED
or FAILED; its optimistic entry is replaced or removed either way.
"""
import asyncio
import enum
import logging
import sys
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from relay.core.exceptions import ChatError
from relay.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@dataclass
class ClientMessage:
    """A message as shown in the client view."""
    id: Optional[int]
    sender_id: int
    receiver_id: int
    created_at: datetime
    text: Optional[str] = None
    image: Optional[str] = None
    status: str = "sent"
    client_id: Optional[str] = None
    pending: bool = False

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ClientMessage":
        return cls(
            id=payload["id"],
            sender_id=payload["sender_id"],
            receiver_id=payload["receiver_id"],
            created_at=_parse_timestamp(payload["created_at"]),
            text=payload.get("text"),
            image=payload.get("image"),
            status=payload.get("status", "sent"),
        )

    @property
    def sort_key(self) -> Tuple[datetime, int]:
        # Optimistic entries have no id yet; they sort after confirmed ones sharing a timestamp
        return self.created_at, self.id if self.id is not None else sys.maxsize


class SendState(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass
class OutgoingMessage:
    """State of one in-flight send."""
    client_id: str
    entry: ClientMessage
    state: SendState = SendState.PENDING
    result: Optional[ClientMessage] = None
    error: Optional[BaseException] = None

    def confirm(self, message: ClientMessage):
        self._require_pending()
        self.state = SendState.CONFIRMED
        self.result = message

    def fail(self, error: BaseException):
        self._require_pending()
        self.state = SendState.FAILED
        self.error = error

    def _require_pending(self):
        if self.state is not SendState.PENDING:
            raise RuntimeError(f"Send {self.client_id} already resolved as {self.state.value}")


class SendFailed(ChatError):
    """A send was rejected or could not reach the server. It is not retried."""

    code = "SEND_FAILED"

    def __init__(self, outgoing: OutgoingMessage, cause: BaseException):
        self.outgoing = outgoing
        self.cause = cause
        status_code = cause.status_code if isinstance(cause, ChatError) else None
        message = cause.message if isinstance(cause, ChatError) else "Failed to send message"
        super().__init__(message, status_code=status_code)


@dataclass
class _ViewState:
    peer_id: Optional[int] = None
    generation: int = 0
    messages: List[ClientMessage] = field(default_factory=list)


class MessageReconciler:
    """
    Keeps the message view of the open conversation consistent.

    `api` needs `messages_between(peer_id)` and `send_message(peer_id, text, image)`
    coroutines, as provided by ChatAPIClient.
    """

    def __init__(self, api, current_user_id: int, clock: Callable[[], datetime] = utcnow):
        self.api = api
        self.current_user_id = current_user_id
        self._clock = clock
        self._view = _ViewState()
        self._outgoing: Dict[str, OutgoingMessage] = {}

    @property
    def peer_id(self) -> Optional[int]:
        return self._view.peer_id

    @property
    def messages(self) -> Tuple[ClientMessage, ...]:
        return tuple(self._view.messages)

    @property
    def pending_count(self) -> int:
        return sum(1 for message in self._view.messages if message.pending)

    @property
    def in_flight(self) -> Tuple[OutgoingMessage, ...]:
        return tuple(self._outgoing.values())

    async def open_conversation(self, peer_id: int) -> bool:
        """
        Switch the view to the conversation with peer_id and load it.

        Returns False when another conversation was opened (or this one
        closed) before the fetch came back; the stale result is discarded.
        """
        self._reset(peer_id)
        generation = self._view.generation

        page = await self.api.messages_between(peer_id)
        if generation != self._view.generation:
            logger.debug(f"Discarding stale history for user {peer_id}")
            return False

        fetched = [ClientMessage.from_payload(payload) for payload in page.get("messages", [])]
        fetched_ids = {message.id for message in fetched}

        # Sends started and pushes received while the fetch was in flight survive the replace
        carried = [
            message for message in self._view.messages
            if message.pending or message.id not in fetched_ids
        ]
        self._view.messages = fetched + carried
        self._sort()
        return True

    def close_conversation(self):
        """Discard the view and stop accepting pushes for it."""
        self._reset(None)

    async def send(self, text: Optional[str] = None, image: Optional[str] = None) -> ClientMessage:
        """
        Show the message immediately, then persist it.

        Raises:
            SendFailed: the server rejected the message or was unreachable;
                the optimistic entry has been removed.
            asyncio.CancelledError: the send was cancelled; the entry is
                removed and the OutgoingMessage marked FAILED.
        """
        peer_id = self._view.peer_id
        if peer_id is None:
            raise RuntimeError("No conversation is open")
        generation = self._view.generation

        client_id = uuid.uuid4().hex
        entry = ClientMessage(
            id=None,
            sender_id=self.current_user_id,
            receiver_id=peer_id,
            created_at=self._clock(),
            text=text.strip() if text else None,
            image=image or None,
            status="pending",
            client_id=client_id,
            pending=True,
        )
        outgoing = OutgoingMessage(client_id=client_id, entry=entry)
        self._outgoing[client_id] = outgoing
        self._view.messages.append(entry)
        self._sort()

        try:
            payload = await self.api.send_message(peer_id, text=text, image=image)
            confirmed = ClientMessage.from_payload(payload)
        except asyncio.CancelledError as e:
            self._abandon(outgoing, generation, e)
            logger.info(f"Send {client_id} to user {peer_id} was cancelled")
            raise
        except Exception as e:
            self._abandon(outgoing, generation, e)
            logger.info(f"Send {client_id} to user {peer_id} failed: {e}")
            raise SendFailed(outgoing, e) from e
        finally:
            self._outgoing.pop(client_id, None)

        outgoing.confirm(confirmed)
        if generation == self._view.generation:
            self._remove_entry(client_id)
            self._upsert(confirmed)
            self._sort()
        return confirmed

    def receive_push(self, message) -> bool:
        """
        Merge a pushed message into the view.

        Messages of other conversations are ignored and False is returned.
        """
        if isinstance(message, dict):
            message = ClientMessage.from_payload(message)

        if not self._belongs_to_open_conversation(message):
            return False

        # A confirmed message supersedes whatever is still pending
        self._view.messages = [entry for entry in self._view.messages if not entry.pending]
        self._upsert(message)
        self._sort()
        return True

    def handle_event(self, event: Dict[str, Any]) -> bool:
        """Apply one realtime event (`new_message`, `message_delivered`, `messages_read`)."""
        event_type = event.get("type")
        data = event.get("data") or {}

        if event_type == "new_message":
            return self.receive_push(data)
        if event_type == "message_delivered":
            return self._set_status([data.get("message_id")], "delivered")
        if event_type == "messages_read":
            return self._set_status(data.get("message_ids", []), "read")
        return False

    def _belongs_to_open_conversation(self, message: ClientMessage) -> bool:
        peer_id = self._view.peer_id
        if peer_id is None:
            return False
        return (
            (message.sender_id == peer_id and message.receiver_id == self.current_user_id)
            or (message.sender_id == self.current_user_id and message.receiver_id == peer_id)
        )

    def _reset(self, peer_id: Optional[int]):
        self._view = _ViewState(peer_id=peer_id, generation=self._view.generation + 1)

    def _abandon(self, outgoing: OutgoingMessage, generation: int, error: BaseException):
        outgoing.fail(error)
        if generation == self._view.generation:
            self._remove_entry(outgoing.client_id)

    def _remove_entry(self, client_id: str):
        self._view.messages = [
            message for message in self._view.messages if message.client_id != client_id
        ]

    def _upsert(self, message: ClientMessage):
        for index, existing in enumerate(self._view.messages):
            if existing.id is not None and existing.id == message.id:
                self._view.messages[index] = message
                return
        self._view.messages.append(message)

    def _set_status(self, message_ids, status: str) -> bool:
        wanted = set(message_ids)
        changed = False
        for index, message in enumerate(self._view.messages):
            if message.id in wanted and message.status != "read":
                self._view.messages[index] = replace(message, status=status)
                changed = True
        return changed

    def _sort(self):
        self._view.messages.sort(key=lambda message: message.sort_key)
