"""
Friendship model read by the friendship oracle.
"""
from datetime import datetime
from enum import Enum
from typing import Optional
from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel, Index


class FriendshipStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    BLOCKED = "blocked"


class Friendship(SQLModel, table=True):
    """A friend request between two users; only ``accepted`` rows count as friends."""
    __tablename__ = "friendships"
    __table_args__ = (
        UniqueConstraint('requester_id', 'recipient_id', name='uq_friendship_pair'),
        Index('idx_friendship_recipient_status', 'recipient_id', 'status'),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    requester_id: int = Field(foreign_key="users.id", index=True)
    recipient_id: int = Field(foreign_key="users.id")
    status: str = Field(default=FriendshipStatus.PENDING.value, max_length=20)
    requested_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    responded_at: Optional[datetime] = Field(default=None)
