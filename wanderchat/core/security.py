"""
Bearer-token authentication for REST routes and websocket sessions.
"""
import logging
from typing import Any, Dict, Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlmodel import Session

from wanderchat.db.database import get_db
from wanderchat.models.user import User
from wanderchat.services.user_directory import UserDirectory
from wanderchat.utils.jwt_handler import jwt_handler

logger = logging.getLogger(__name__)

# JWT token security
security = HTTPBearer(auto_error=False)


def _user_id_from_payload(payload: Dict[str, Any]) -> Optional[int]:
    try:
        return int(payload.get("sub"))
    except (TypeError, ValueError):
        return None


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """Dependency to get the authenticated user from the bearer token."""
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = await jwt_handler.verify_token(credentials.credentials, "access")
    user_id = _user_id_from_payload(payload)
    user = UserDirectory(db).find_by_id(user_id) if user_id is not None else None
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


async def authenticate_token(token: Optional[str], db: Session) -> Optional[User]:
    """Resolve a websocket token to an active user, or None if it is not valid."""
    if not token:
        return None
    try:
        payload = await jwt_handler.verify_token(token, "access")
    except HTTPException as e:
        logger.info(f"Websocket authentication rejected: {e.detail}")
        return None

    user_id = _user_id_from_payload(payload)
    if user_id is None:
        return None
    return UserDirectory(db).find_by_id(user_id)
