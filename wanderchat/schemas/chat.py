"""
Chat schemas for API validation.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator


class ChatFilter(str, Enum):
    ALL = "all"
    GROUPS = "groups"
    DIRECT = "direct"
    UNREAD = "unread"


class ChatCreate(BaseModel):
    """Schema for opening a 1:1 chat with another user."""
    participant_id: int = Field(..., gt=0, description="ID of the other user")

    model_config = {
        "json_schema_extra": {
            "example": {"participant_id": 2}
        }
    }


class GroupChatCreate(BaseModel):
    """Schema for creating a group chat."""
    name: str = Field(..., max_length=100, description="Group display name")
    participant_ids: List[int] = Field(..., description="Friends to add besides the creator")
    group_image: Optional[str] = Field(None, max_length=500, description="Group image URL")

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        return v.strip()

    model_config = {
        "json_schema_extra": {
            "example": {
                "name": "Trip",
                "participant_ids": [2, 3],
            }
        }
    }


class UserSummary(BaseModel):
    """Profile summary embedded in chat and message payloads."""
    id: int
    username: str
    first_name: str
    last_name: Optional[str] = None
    profile_picture: Optional[str] = None


class ParticipantSummary(UserSummary):
    """Participant summary with presence."""
    is_online: bool = False
    last_seen: Optional[datetime] = None


class LastMessageSummary(BaseModel):
    """Denormalized last message shown in chat lists."""
    id: int
    sender_id: int
    sender_name: Optional[str] = None
    content: Optional[str] = None
    message_type: str
    is_deleted: bool = False
    created_at: datetime


class ChatResponse(BaseModel):
    """Schema for chat details."""
    id: int
    chat_name: Optional[str] = Field(None, description="Group name, or the other participant's name")
    name: Optional[str] = None
    is_group_chat: bool
    group_admin_id: Optional[int] = None
    group_image: Optional[str] = None
    participants: List[ParticipantSummary]
    last_message: Optional[LastMessageSummary] = None
    last_activity: datetime
    is_active: bool
    created_at: datetime


class ChatListItem(ChatResponse):
    """Chat entry in the user's chat list."""
    unread_count: int = Field(0, description="Messages from others not yet read by the user")


class Pagination(BaseModel):
    """Offset pagination metadata."""
    current_page: int
    total_pages: int
    total: int
    has_more: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int, returned: int) -> "Pagination":
        offset = (page - 1) * limit
        return cls(
            current_page=page,
            total_pages=(total + limit - 1) // limit if limit else 0,
            total=total,
            has_more=offset + returned < total,
        )


class ChatList(BaseModel):
    """Schema for a page of the user's chats."""
    chats: List[ChatListItem]
    pagination: Pagination


class UserSearchResponse(BaseModel):
    """Schema for user search results."""
    users: List[UserSummary]
