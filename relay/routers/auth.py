"""
Authentication router.

Credentials and token issuance belong to the external auth service; this
router resolves the bearer token on each request into the current user.
"""
import logging
from fastapi import APIRouter, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlmodel import Session

from relay.core.exceptions import AuthError
from relay.core.security import resolve_identity
from relay.db.database import get_db
from relay.models.user import User
from relay.schemas.chat import UserBasicInfo
from relay.utils import success_response
from relay.utils.websocket_manager import connection_manager

router = APIRouter(prefix="/auth", tags=["authentication"])
security = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """Dependency to get current authenticated user."""
    if credentials is None:
        raise AuthError("Not authenticated")

    user_id = resolve_identity(credentials.credentials)

    user = db.get(User, user_id)
    if not user:
        raise AuthError("User not found")

    if not user.is_active:
        raise AuthError("User account is inactive")

    return user


@router.get("/me", operation_id="get_current_identity")
async def get_me(current_user: User = Depends(get_current_user)):
    """Return the identity resolved from the bearer token."""
    return success_response(
        message="Current user retrieved successfully",
        data=UserBasicInfo(
            id=current_user.id,
            username=current_user.username,
            full_name=current_user.full_name,
            profile_pic=current_user.profile_pic,
            is_online=await connection_manager.is_user_online(current_user.id)
        ).model_dump()
    )
