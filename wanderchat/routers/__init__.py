# FastAPI routers
from .chats import router as chats_router
from .messages import router as messages_router
from .gateway import router as gateway_router

__all__ = ["chats_router", "messages_router", "gateway_router"]
