"""
Message schemas for API validation.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

from wanderchat.models.message import MediaType, MessageType
from wanderchat.schemas.chat import Pagination, UserSummary


class MediaAttachmentIn(BaseModel):
    """An already-uploaded media object referenced by a new message."""
    url: str = Field(..., min_length=1, max_length=1000)
    media_type: MediaType
    file_name: Optional[str] = Field(None, max_length=255)
    file_size: Optional[int] = Field(None, ge=0)
    mime_type: Optional[str] = Field(None, max_length=100)


class MessageSend(BaseModel):
    """Schema for sending a message to a chat."""
    content: Optional[str] = Field(None, max_length=5000, description="Message text")
    message_type: MessageType = Field(MessageType.TEXT, description="Message kind")
    reply_to_id: Optional[int] = Field(None, gt=0, description="Message being replied to")
    media_files: List[MediaAttachmentIn] = Field(default_factory=list, max_length=5)

    model_config = {
        "json_schema_extra": {
            "example": {
                "content": "Landed in Lisbon!",
                "message_type": "text",
                "reply_to_id": None,
                "media_files": []
            }
        }
    }


class MessageEdit(BaseModel):
    """Schema for editing a text message."""
    content: str = Field(..., max_length=5000)

    @field_validator('content')
    @classmethod
    def validate_content(cls, v):
        if not v.strip():
            raise ValueError('Message content cannot be empty or whitespace only')
        return v.strip()


class MessageDelete(BaseModel):
    """Schema for deleting a message."""
    delete_for_everyone: bool = Field(False, description="Delete for all participants (24h window)")


class MessageMarkRead(BaseModel):
    """Schema for marking messages as read."""
    message_ids: List[int] = Field(..., description="List of message IDs to mark as read")

    @field_validator('message_ids')
    @classmethod
    def validate_message_ids(cls, v):
        if not v:
            raise ValueError('At least one message ID must be provided')
        if len(v) > 100:
            raise ValueError('Cannot mark more than 100 messages as read at once')
        return v

    model_config = {
        "json_schema_extra": {
            "example": {"message_ids": [1, 2, 3]}
        }
    }


class AttachmentResponse(BaseModel):
    url: str
    media_type: str
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None


class ReceiptResponse(BaseModel):
    user_id: int
    at: datetime


class ReplySummary(BaseModel):
    """Summary of the message being replied to."""
    id: int
    sender_id: int
    sender_name: Optional[str] = None
    content: Optional[str] = None
    message_type: str
    is_deleted: bool = False


class MessageResponse(BaseModel):
    """Schema for a message as seen by clients."""
    id: int
    chat_id: int
    sender: UserSummary
    content: Optional[str] = None
    message_type: str
    media_files: List[AttachmentResponse] = Field(default_factory=list)
    reply_to: Optional[ReplySummary] = None
    read_by: List[ReceiptResponse] = Field(default_factory=list)
    delivered_to: List[ReceiptResponse] = Field(default_factory=list)
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    created_at: datetime


class MessageGroup(BaseModel):
    """Messages sharing one calendar date."""
    date: str
    messages: List[MessageResponse]


class MessageHistory(BaseModel):
    """Schema for a page of chat history."""
    messages: List[MessageGroup]
    pagination: Pagination


class MessageMarkReadResponse(BaseModel):
    marked_count: int = Field(..., description="Number of messages newly marked as read")
