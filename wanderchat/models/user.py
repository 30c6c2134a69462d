"""
User directory model with profile and presence fields using SQLModel.
"""
from datetime import datetime
from typing import Optional
from sqlmodel import Field, SQLModel, Index


class UserBase(SQLModel):
    """Base user model with common fields."""
    username: str = Field(unique=True, index=True, max_length=50)
    first_name: str = Field(max_length=70)
    last_name: Optional[str] = Field(default=None, max_length=70)
    profile_picture: Optional[str] = Field(default=None, max_length=500)
    is_active: bool = Field(default=True)


class User(UserBase, table=True):
    """
    User database model.

    ``is_online`` and ``last_seen`` are written by the websocket gateway when a
    user's first session opens or last session closes.
    """
    __tablename__ = "users"
    __table_args__ = (
        Index('idx_user_username_active', 'username', 'is_active'),
    )

    id: Optional[int] = Field(default=None, primary_key=True, index=True)
    is_online: bool = Field(default=False, index=True)
    last_seen: Optional[datetime] = Field(default=None)

    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)

    @property
    def display_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username='{self.username}')>"
