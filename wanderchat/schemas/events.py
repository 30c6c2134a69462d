"""
Websocket event schemas.

Clients send ``{"type": ..., "data": {...}}``; the server answers with the same
envelope plus a ``timestamp``.
"""
from datetime import datetime
from typing import Any, Dict
from pydantic import BaseModel, Field

from wanderchat.schemas.message import MessageSend


class WebSocketMessage(BaseModel):
    """Schema for a websocket event envelope."""
    type: str = Field(..., description="Event type (send_message, typing, message_read, etc.)")
    data: Dict[str, Any] = Field(default_factory=dict, description="Event payload")
    timestamp: datetime = Field(default_factory=datetime.utcnow, description="Server timestamp")

    model_config = {
        "json_schema_extra": {
            "example": {
                "type": "send_message",
                "data": {
                    "chat_id": 1,
                    "content": "Hello via WebSocket!"
                }
            }
        }
    }


class ChatEvent(BaseModel):
    """Payload of join_chat, leave_chat, typing and stop_typing."""
    chat_id: int = Field(..., gt=0)


class SendMessageEvent(MessageSend):
    """Payload of send_message."""
    chat_id: int = Field(..., gt=0)


class ReceiptEvent(BaseModel):
    """Payload of message_read and message_delivered."""
    message_id: int = Field(..., gt=0)
    chat_id: int = Field(..., gt=0)


def build_event(event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
    """Create a JSON-ready server event."""
    return WebSocketMessage(type=event_type, data=data).model_dump(mode="json")
