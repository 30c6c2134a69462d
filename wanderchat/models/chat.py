"""
Chat (conversation) models for 1:1 and group chats using SQLModel.
"""
from datetime import datetime
from typing import List, Optional
from sqlmodel import Field, Relationship, SQLModel, Index


class ChatBase(SQLModel):
    """Base chat model."""
    name: Optional[str] = Field(default=None, max_length=100)
    is_group_chat: bool = Field(default=False, index=True)
    group_image: Optional[str] = Field(default=None, max_length=500)


class Chat(ChatBase, table=True):
    """
    Chat database model.

    ``direct_key`` is set only for 1:1 chats and holds the unordered participant
    pair as ``"<min_id>:<max_id>"``. Its unique constraint is what keeps two
    concurrent get-or-create calls from producing two chats.
    """
    __tablename__ = "chats"
    __table_args__ = (
        Index('idx_chat_active_activity', 'is_active', 'last_activity'),
    )

    id: Optional[int] = Field(default=None, primary_key=True, index=True)
    direct_key: Optional[str] = Field(default=None, max_length=64, unique=True)
    group_admin_id: Optional[int] = Field(default=None, foreign_key="users.id")
    last_message_id: Optional[int] = Field(default=None)
    last_activity: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    is_active: bool = Field(default=True)

    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)

    participants: List["ChatParticipant"] = Relationship(
        back_populates="chat",
        sa_relationship_kwargs={"order_by": "ChatParticipant.joined_at", "cascade": "all, delete-orphan"}
    )

    @staticmethod
    def direct_key_for(user_a: int, user_b: int) -> str:
        low, high = sorted((user_a, user_b))
        return f"{low}:{high}"

    @property
    def participant_ids(self) -> List[int]:
        return [participant.user_id for participant in self.participants]

    def __repr__(self) -> str:
        kind = "group" if self.is_group_chat else "direct"
        return f"<Chat(id={self.id}, kind={kind}, active={self.is_active})>"


class ChatParticipant(SQLModel, table=True):
    """Membership of a user in a chat."""
    __tablename__ = "chat_participants"

    chat_id: Optional[int] = Field(default=None, foreign_key="chats.id", primary_key=True)
    user_id: int = Field(foreign_key="users.id", primary_key=True, index=True)
    joined_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)

    chat: Optional[Chat] = Relationship(back_populates="participants")
