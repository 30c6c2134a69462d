"""
SQLModel models for the WanderChat backend.

This module contains all database models including:
- User: User directory with presence fields
- Friendship: Friend relationships consulted for group membership
- Chat / ChatParticipant: 1:1 and group conversations
- Message and its attachments, receipts and per-viewer deletions
"""

from wanderchat.models.user import User
from wanderchat.models.friendship import Friendship, FriendshipStatus
from wanderchat.models.chat import Chat, ChatParticipant
from wanderchat.models.message import (
    Message,
    MessageAttachment,
    MessageReceipt,
    MessageDeletion,
    MessageType,
    MediaType,
    ReceiptKind,
)

__all__ = [
    "User",
    "Friendship",
    "FriendshipStatus",
    "Chat",
    "ChatParticipant",
    "Message",
    "MessageAttachment",
    "MessageReceipt",
    "MessageDeletion",
    "MessageType",
    "MediaType",
    "ReceiptKind",
]
