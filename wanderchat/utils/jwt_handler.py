"""
JWT token handling utilities with revocation list support.
"""
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional, Dict, Any
from jose import JWTError, jwt
from fastapi import HTTPException, status

from wanderchat.core.config import settings
from wanderchat.db.redis_client import redis_manager, redis_cache

logger = logging.getLogger(__name__)


class JWTHandler:
    """JWT access token creation and validation with Redis blacklist support."""

    def __init__(self):
        self.redis_manager = redis_manager

    def create_access_token(self, data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
        """Create JWT access token with unique identifier."""
        to_encode = data.copy()

        if expires_delta:
            expire = datetime.utcnow() + expires_delta
        else:
            expire = datetime.utcnow() + timedelta(minutes=settings.jwt_access_token_expire_minutes)

        # Add token metadata
        to_encode.update({
            "exp": expire,
            "type": "access",
            "iat": datetime.utcnow(),
            "jti": secrets.token_urlsafe(32)  # Unique token ID for blacklisting
        })

        return jwt.encode(
            to_encode,
            settings.jwt_secret_key,
            algorithm=settings.jwt_algorithm
        )

    async def verify_token(self, token: str, token_type: str = "access") -> Dict[str, Any]:
        """Verify and decode JWT token with blacklist check."""
        try:
            payload = jwt.decode(
                token,
                settings.jwt_secret_key,
                algorithms=[settings.jwt_algorithm]
            )
        except JWTError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Could not validate credentials"
            )

        if payload.get("type") != token_type:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=f"Invalid token type. Expected {token_type}"
            )

        token_id = payload.get("jti")
        if token_id and await self._is_token_blacklisted(token_id):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Token has been revoked"
            )

        return payload

    async def _is_token_blacklisted(self, token_id: str) -> bool:
        """Check if token ID was revoked by the auth service (blacklist:{jti})."""
        # If Redis is unavailable, allow token (fail open)
        if not self.redis_manager.is_connected:
            return False
        return await redis_cache.exists(f"blacklist:{token_id}")


# Global JWT handler instance
jwt_handler = JWTHandler()
