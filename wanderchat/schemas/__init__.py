"""
Pydantic schemas for API validation.
"""

# Chat schemas
from .chat import (
    ChatFilter,
    ChatCreate,
    GroupChatCreate,
    UserSummary,
    ParticipantSummary,
    LastMessageSummary,
    ChatResponse,
    ChatListItem,
    Pagination,
    ChatList,
    UserSearchResponse,
)

# Message schemas
from .message import (
    MediaAttachmentIn,
    MessageSend,
    MessageEdit,
    MessageDelete,
    MessageMarkRead,
    MessageResponse,
    MessageGroup,
    MessageHistory,
    MessageMarkReadResponse,
)

# Websocket event schemas
from .events import (
    WebSocketMessage,
    ChatEvent,
    SendMessageEvent,
    ReceiptEvent,
    build_event,
)

__all__ = [
    # Chat schemas
    "ChatFilter",
    "ChatCreate",
    "GroupChatCreate",
    "UserSummary",
    "ParticipantSummary",
    "LastMessageSummary",
    "ChatResponse",
    "ChatListItem",
    "Pagination",
    "ChatList",
    "UserSearchResponse",
    # Message schemas
    "MediaAttachmentIn",
    "MessageSend",
    "MessageEdit",
    "MessageDelete",
    "MessageMarkRead",
    "MessageResponse",
    "MessageGroup",
    "MessageHistory",
    "MessageMarkReadResponse",
    # Websocket event schemas
    "WebSocketMessage",
    "ChatEvent",
    "SendMessageEvent",
    "ReceiptEvent",
    "build_event",
]
