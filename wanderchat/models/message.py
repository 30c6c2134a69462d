"""
Message models with attachments, read/delivery receipts and per-viewer deletion.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional
from sqlalchemy import Column, Text, UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel, Index


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    LOCATION = "location"


class MediaType(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"


class ReceiptKind(str, Enum):
    READ = "read"
    DELIVERED = "delivered"


class Message(SQLModel, table=True):
    """
    Chat message database model.

    A message is hidden from everybody once ``is_deleted`` is set, and from a
    single viewer once a ``MessageDeletion`` row exists for them.
    """
    __tablename__ = "messages"
    __table_args__ = (
        Index('idx_message_chat_created', 'chat_id', 'created_at'),
    )

    id: Optional[int] = Field(default=None, primary_key=True, index=True)
    chat_id: int = Field(foreign_key="chats.id", index=True)
    sender_id: int = Field(foreign_key="users.id", index=True)
    content: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    message_type: str = Field(default=MessageType.TEXT.value, max_length=20)
    reply_to_id: Optional[int] = Field(default=None, foreign_key="messages.id")

    is_edited: bool = Field(default=False)
    edited_at: Optional[datetime] = Field(default=None)
    is_deleted: bool = Field(default=False, index=True)
    deleted_at: Optional[datetime] = Field(default=None)

    created_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)
    updated_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)

    attachments: List["MessageAttachment"] = Relationship(
        back_populates="message",
        sa_relationship_kwargs={"order_by": "MessageAttachment.position", "cascade": "all, delete-orphan"}
    )
    receipts: List["MessageReceipt"] = Relationship(
        back_populates="message",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"}
    )
    deletions: List["MessageDeletion"] = Relationship(
        back_populates="message",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"}
    )

    def receipt_for(self, user_id: int, kind: ReceiptKind) -> Optional["MessageReceipt"]:
        for receipt in self.receipts:
            if receipt.user_id == user_id and receipt.kind == kind.value:
                return receipt
        return None

    def receipts_of(self, kind: ReceiptKind) -> List["MessageReceipt"]:
        return [receipt for receipt in self.receipts if receipt.kind == kind.value]

    @property
    def deleted_for(self) -> List[int]:
        return [deletion.user_id for deletion in self.deletions]

    def __repr__(self) -> str:
        preview = (self.content or "")[:50]
        return f"<Message(id={self.id}, chat_id={self.chat_id}, sender_id={self.sender_id}, content='{preview}')>"


class MessageAttachment(SQLModel, table=True):
    """Media file referenced by a message; the bytes live in the blob store."""
    __tablename__ = "message_attachments"

    id: Optional[int] = Field(default=None, primary_key=True)
    message_id: Optional[int] = Field(default=None, foreign_key="messages.id", index=True)
    position: int = Field(default=0)
    url: str = Field(max_length=1000)
    media_type: str = Field(max_length=20)
    file_name: Optional[str] = Field(default=None, max_length=255)
    file_size: Optional[int] = Field(default=None)
    mime_type: Optional[str] = Field(default=None, max_length=100)

    message: Optional[Message] = Relationship(back_populates="attachments")


class MessageReceipt(SQLModel, table=True):
    """One read or delivery acknowledgement of a message by a user."""
    __tablename__ = "message_receipts"
    __table_args__ = (
        UniqueConstraint('message_id', 'user_id', 'kind', name='uq_receipt_message_user_kind'),
        Index('idx_receipt_user_kind', 'user_id', 'kind'),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    message_id: Optional[int] = Field(default=None, foreign_key="messages.id", index=True)
    user_id: int = Field(foreign_key="users.id")
    kind: str = Field(max_length=20)
    at: datetime = Field(default_factory=datetime.utcnow, nullable=False)

    message: Optional[Message] = Relationship(back_populates="receipts")


class MessageDeletion(SQLModel, table=True):
    """A "delete for me" marker hiding a message from one user."""
    __tablename__ = "message_deletions"

    message_id: Optional[int] = Field(default=None, foreign_key="messages.id", primary_key=True)
    user_id: int = Field(foreign_key="users.id", primary_key=True)
    deleted_at: datetime = Field(default_factory=datetime.utcnow, nullable=False)

    message: Optional[Message] = Relationship(back_populates="deletions")
