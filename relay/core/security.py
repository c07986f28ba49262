"""
Identity claim handling.

Credentials and session issuance live in an external auth service; this
module only verifies the signed access token it hands out and resolves the
`sub` claim to a user id.
"""
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
from jose import JWTError, jwt

from .config import settings
from .exceptions import AuthError


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token in the format the auth service issues.

    Used by tooling and tests; production tokens come from the auth service.
    """
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes))

    to_encode.update({
        "exp": expire,
        "iat": now,
        "type": "access",
        "jti": secrets.token_urlsafe(32)
    })
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Dict[str, Any]:
    """Verify and decode an access token, raising AuthError when it is not usable."""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm]
        )
    except JWTError:
        raise AuthError("Could not validate credentials")

    if payload.get("type") != "access":
        raise AuthError("Invalid token type. Expected access")

    return payload


def resolve_identity(token: str) -> int:
    """Return the user id carried by a valid access token."""
    payload = decode_access_token(token)
    subject = payload.get("sub")
    try:
        return int(subject)
    except (TypeError, ValueError):
        raise AuthError("Invalid token payload")


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Simple token verification for WebSocket authentication.
    Returns payload if valid, None if invalid.
    """
    try:
        return decode_access_token(token)
    except AuthError:
        return None
