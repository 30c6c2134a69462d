"""
User directory: identity lookups, profile summaries and the online flag.
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional
from sqlalchemy import or_, func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from wanderchat.core.exceptions import UpstreamError
from wanderchat.models.user import User

logger = logging.getLogger(__name__)


class UserDirectory:
    """Service for user directory operations."""

    def __init__(self, db: Session):
        self.db = db

    def find_by_id(self, user_id: int) -> Optional[User]:
        """Get an active user by ID."""
        try:
            user = self.db.get(User, user_id)
        except SQLAlchemyError as e:
            logger.error(f"Directory lookup failed for user {user_id}: {e}")
            raise UpstreamError("User directory lookup failed") from e
        if user is None or not user.is_active:
            return None
        return user

    def exists(self, user_id: int) -> bool:
        return self.find_by_id(user_id) is not None

    def find_many(self, user_ids: Iterable[int]) -> Dict[int, User]:
        ids = set(user_ids)
        if not ids:
            return {}
        users = self.db.exec(select(User).where(User.id.in_(sorted(ids)))).all()
        return {user.id: user for user in users}

    def set_online_status(self, user_id: int, is_online: bool, now: Optional[datetime] = None) -> Optional[datetime]:
        """
        Flip a user's online flag.

        Going offline stamps ``last_seen``; coming online clears it.

        Returns:
            The stored ``last_seen`` value.
        """
        user = self.db.get(User, user_id)
        if user is None:
            return None
        user.is_online = is_online
        user.last_seen = None if is_online else (now or datetime.utcnow())
        user.updated_at = datetime.utcnow()
        self.db.add(user)
        self.db.commit()
        return user.last_seen

    def search(self, query: str, exclude_user_id: int, limit: int = 20) -> List[User]:
        """Case-insensitive search over username and names."""
        pattern = f"%{query.lower()}%"
        statement = select(User).where(
            User.id != exclude_user_id,
            User.is_active == True,  # noqa: E712
            or_(
                func.lower(User.username).like(pattern),
                func.lower(User.first_name).like(pattern),
                func.lower(User.last_name).like(pattern),
            )
        ).order_by(User.username).limit(limit)
        return self.db.exec(statement).all()

    @staticmethod
    def summary(user: Optional[User], user_id: int = None) -> dict:
        """Profile summary used in chat and message payloads."""
        if user is None:
            return {"id": user_id, "username": "unknown", "first_name": "Unknown"}
        return {
            "id": user.id,
            "username": user.username,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "profile_picture": user.profile_picture,
        }

    @staticmethod
    def presence_summary(user: Optional[User], user_id: int = None) -> dict:
        data = UserDirectory.summary(user, user_id)
        data["is_online"] = bool(user and user.is_online)
        data["last_seen"] = user.last_seen if user else None
        return data
