"""
Chat router for conversations, message history, sending and the realtime channel.
"""
import logging
from typing import Optional
from fastapi import APIRouter, BackgroundTasks, Depends, Query, WebSocket, status
from sqlalchemy import func, or_
from sqlmodel import Session, select

from relay.core.config import settings
from relay.core.security import verify_token
from relay.db.database import get_db
from relay.models.user import User
from relay.routers.auth import get_current_user
from relay.schemas.chat import (
    ConversationList, MessageMarkReadBySender, MessageMarkReadResponse, MessagePage,
    MessageResponse, MessageSend, OnlineStatusResponse, UserBasicInfo, UserStatusResponse,
    UsersListResponse
)
from relay.services.chat_service import ChatService, deliver_message, notify_messages_read
from relay.services.conversation_service import ConversationAggregator, total_unread
from relay.utils import success_response
from relay.utils.websocket_manager import connection_manager, serve_channel

router = APIRouter(prefix="/chat", tags=["chat"])
logger = logging.getLogger(__name__)


@router.get("/conversations", response_model=ConversationList, operation_id="list_conversations")
async def list_conversations(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    limit: Optional[int] = Query(None, ge=1, le=settings.conversations_max_limit, description="Maximum number of conversations to return")
):
    """
    Get the conversation list of the current user.

    A conversation is every distinct user with whom messages have been
    exchanged, with the last message and the number of unread messages,
    most recent first.
    """
    conversations = ConversationAggregator(db).list_conversations(current_user.id, limit=limit)

    return success_response(
        message="Conversations retrieved successfully",
        data=ConversationList(
            conversations=conversations,
            total=len(conversations),
            total_unread=total_unread(conversations)
        )
    )


@router.get("/messages/{peer_id}", response_model=MessagePage, operation_id="get_messages")
async def get_messages(
    peer_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    before: Optional[str] = Query(None, description="Cursor: return messages older than this one"),
    after: Optional[str] = Query(None, description="Cursor: return messages newer than this one"),
    limit: Optional[int] = Query(None, ge=1, le=settings.messages_max_page_size, description="Page size")
):
    """
    Get messages exchanged with another user, oldest first.

    - **before**: page back into history from `oldest_cursor`
    - **after**: catch up on newer messages from `newest_cursor`
    """
    window = ChatService(db).get_history(current_user.id, peer_id, after=after, before=before, limit=limit)

    return success_response(
        message="Messages retrieved successfully",
        data=MessagePage(
            messages=[MessageResponse.from_message(message) for message in window.messages],
            has_more=window.has_more,
            oldest_cursor=window.oldest_cursor,
            newest_cursor=window.newest_cursor
        )
    )


@router.post("/messages/{peer_id}", response_model=MessageResponse, status_code=status.HTTP_201_CREATED, operation_id="send_message")
async def send_message(
    peer_id: int,
    message_data: MessageSend,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Send a message to another user.

    - **text**: message text (optional if an image is given)
    - **image**: URL of an already uploaded image (optional if text is given)

    The message is persisted before responding; realtime delivery to the
    receiver happens after the response and never delays it.
    """
    message = ChatService(db).send_message(
        current_user.id, peer_id, text=message_data.text, image=message_data.image
    )
    background_tasks.add_task(deliver_message, message.id)

    return success_response(
        message="Message sent successfully",
        data=MessageResponse.from_message(message),
        status_code=status.HTTP_201_CREATED
    )


@router.post("/mark-read", response_model=MessageMarkReadResponse, operation_id="mark_messages_as_read")
async def mark_messages_as_read(
    read_data: MessageMarkReadBySender,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Mark messages from a specific user as read.

    - **sender_id**: ID of the user whose messages should be marked as read
    """
    message_ids = ChatService(db).mark_conversation_read(current_user.id, read_data.sender_id)
    if message_ids:
        background_tasks.add_task(notify_messages_read, current_user.id, read_data.sender_id, message_ids)

    return success_response(
        message=f"Successfully marked {len(message_ids)} messages as read",
        data=MessageMarkReadResponse(marked_count=len(message_ids), message_ids=message_ids)
    )


@router.post("/messages/{message_id}/read", response_model=MessageResponse, operation_id="mark_message_as_read")
async def mark_message_as_read(
    message_id: int,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Mark a single received message as read."""
    message, changed = ChatService(db).mark_message_read(current_user.id, message_id)
    if changed:
        background_tasks.add_task(notify_messages_read, current_user.id, message.sender_id, [message.id])

    return success_response(
        message="Message marked as read",
        data=MessageResponse.from_message(message)
    )


@router.get("/users", response_model=UsersListResponse, operation_id="get_chat_users")
async def get_chat_users(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    search: Optional[str] = Query(None, min_length=1, max_length=100, description="Match on username, full name or email"),
    limit: int = Query(50, ge=1, le=100)
):
    """
    Discover active users to chat with.

    Returns basic user information with online status, excluding the
    current user.
    """
    statement = select(User).where(User.id != current_user.id, User.is_active == True)  # noqa: E712
    if search:
        pattern = f"%{search.strip().lower()}%"
        statement = statement.where(or_(
            func.lower(User.username).like(pattern),
            func.lower(User.full_name).like(pattern),
            func.lower(User.email).like(pattern)
        ))
    users = db.exec(statement.order_by(User.username).limit(limit)).all()

    online_user_ids = set(await connection_manager.get_online_users())
    users_list = [
        UserBasicInfo(
            id=user.id,
            username=user.username,
            full_name=user.full_name,
            profile_pic=user.profile_pic,
            is_online=user.id in online_user_ids
        )
        for user in users
    ]

    return success_response(
        message="Chat users retrieved successfully",
        data=UsersListResponse(
            users=users_list,
            total_users=len(users_list),
            online_count=sum(1 for user in users_list if user.is_online)
        )
    )


@router.get("/status/{user_id}", response_model=UserStatusResponse, operation_id="get_user_online_status")
async def get_user_online_status(
    user_id: int,
    current_user: User = Depends(get_current_user)
):
    """
    Check if a user is currently online (connected via WebSocket).
    """
    is_online = await connection_manager.is_user_online(user_id)
    return success_response(
        message="User online status retrieved successfully",
        data=UserStatusResponse(user_id=user_id, is_online=is_online)
    )


@router.get("/online-users", response_model=OnlineStatusResponse, operation_id="get_all_online_users")
async def get_all_online_users(
    current_user: User = Depends(get_current_user)
):
    """
    Get a list of all currently online users.
    """
    online_user_ids = await connection_manager.get_online_users()
    return success_response(
        message="Online users retrieved successfully",
        data=OnlineStatusResponse(
            online_users=online_user_ids,
            total_online=len(online_user_ids),
            requesting_user=current_user.id
        )
    )


@router.websocket("/ws/{token}")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str,
    db: Session = Depends(get_db)
):
    """
    WebSocket endpoint for real-time chat.

    - Authenticates user via JWT token in the URL.
    - Pushes `new_message`, `message_delivered` and `messages_read` events.
    - Accepts `send_message`, `mark_read`, `get_online_status` and `ping`.
    """
    payload = verify_token(token)
    user = None
    if payload:
        try:
            user = db.get(User, int(payload.get("sub")))
        except (TypeError, ValueError):
            user = None

    if not user or not user.is_active:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await serve_channel(websocket, user.id, db)
