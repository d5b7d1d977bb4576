"""
FastAPI dependencies for authentication.

This module provides dependency functions that can be used in route handlers to:
- Extract and validate the current user from a JWT access token
- Resolve the same user for WebSocket connections, which cannot use Depends(security)
"""

import logging
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from database import get_db
from errors import unauthenticated
from models import User
from auth.security import verify_token
from config import REQUIRE_VERIFIED_EMAIL

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme for JWT authentication
security = HTTPBearer(auto_error=False)


def authenticate_token(token: Optional[str], db: Session) -> User:
    """
    Resolve an access token to an active user.

    Args:
        token: Raw JWT access token (may be None)
        db: Database session

    Returns:
        The authenticated User

    Raises:
        ServiceError(unauthenticated): token missing, invalid, expired, of the
            wrong type, or bound to an unknown/inactive/unverified user
    """
    if not token:
        logger.info("No authentication credentials provided")
        raise unauthenticated("Not authenticated")

    payload = verify_token(token, expected_type="access")
    if payload is None:
        raise unauthenticated("Invalid or expired token")

    # Malformed tokens should return 401, not 500
    try:
        user_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        logger.info(f"Invalid user_id format in token: {payload.get('sub')}")
        raise unauthenticated("Invalid token payload")

    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        logger.info(f"User not found for id: {user_id}")
        raise unauthenticated("User not found")

    if not user.is_active:
        logger.info(f"Inactive user attempted access: {user_id}")
        raise unauthenticated("User account is inactive")

    if REQUIRE_VERIFIED_EMAIL and not user.email_verified:
        logger.info(f"Unverified user attempted access: {user_id}")
        raise unauthenticated("Email address has not been verified")

    logger.debug(f"User authenticated via JWT: {user.id}")
    return user


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """
    Extract and validate the current user from the Authorization header.

    Example:
        @router.get("/api/protected")
        async def protected_route(user: User = Depends(get_current_user)):
            return {"user_id": user.id}
    """
    token = credentials.credentials if credentials else None
    return authenticate_token(token, db)
