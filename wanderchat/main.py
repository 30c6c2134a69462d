"""
Main FastAPI application with router registration, middleware, and lifecycle events.
"""
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Dict, Any

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from wanderchat.core.config import settings
from wanderchat.core.exceptions import ChatError
from wanderchat.db.database import db_manager, create_db_and_tables
from wanderchat.db.redis_client import init_redis, close_redis, redis_manager
from wanderchat.routers import chats_router, messages_router, gateway_router
from wanderchat.utils import error_response
from wanderchat.utils.websocket_manager import connection_manager

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.debug else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager for startup and shutdown events.
    """
    # Startup
    logger.info(f"Starting {settings.app_name} application...")

    max_retries = settings.startup_max_retries
    retries = 0
    while retries < max_retries:
        try:
            logger.info(f"Attempting to initialize application (attempt {retries + 1}/{max_retries})...")

            logger.info("Creating database and tables...")
            create_db_and_tables()

            if settings.redis_enabled:
                logger.info("Initializing Redis connection...")
                await init_redis()
            else:
                logger.info("Redis disabled; token revocation checks are skipped")

            logger.info("Application startup completed successfully")
            break

        except Exception as e:
            retries += 1
            logger.warning(f"Startup attempt {retries}/{max_retries} failed: {e}")
            if retries >= max_retries:
                logger.error("Application startup failed after multiple retries.")
                raise
            await asyncio.sleep(settings.startup_retry_delay_seconds)

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.app_name} application...")

    try:
        await connection_manager.shutdown()

        if redis_manager.is_connected:
            await close_redis()
            logger.info("Redis connections closed")

        db_manager.close_all_connections()
        logger.info("Database connections closed")

        logger.info("Application shutdown completed successfully")

    except Exception as e:
        logger.error(f"Error during application shutdown: {e}")


# Create FastAPI application with lifespan manager
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Real-time chat backend: chats, messages, receipts and presence over REST and WebSocket",
    debug=settings.debug,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)


# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allow_methods,
    allow_headers=settings.cors_allow_headers,
)


# Global exception handlers
@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    """Map domain errors to the error envelope."""
    return error_response(message=exc.message, status_code=exc.status_code)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with consistent error format."""
    response = error_response(
        message=str(exc.detail),
        data={"code": f"HTTP_{exc.status_code}", "path": str(request.url.path)},
        status_code=exc.status_code,
    )
    for name, value in (exc.headers or {}).items():
        response.headers[name] = value
    return response


@app.exception_handler(StarletteHTTPException)
async def starlette_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle Starlette HTTP exceptions."""
    return error_response(
        message=str(exc.detail),
        data={"code": f"HTTP_{exc.status_code}", "path": str(request.url.path)},
        status_code=exc.status_code,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request validation errors."""
    errors = []
    for error in exc.errors():
        errors.append({
            "field": ".".join(str(x) for x in error["loc"]),
            "message": error["msg"],
            "type": error["type"]
        })

    return error_response(
        message="Request validation failed",
        data={"code": "VALIDATION_ERROR", "details": errors},
        status_code=400,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    if settings.debug:
        return error_response(
            message=str(exc),
            data={"code": "INTERNAL_SERVER_ERROR", "type": type(exc).__name__},
            status_code=500,
        )
    return error_response(
        message="An unexpected error occurred",
        data={"code": "INTERNAL_SERVER_ERROR"},
        status_code=500,
    )


# Middleware for request logging
@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all HTTP requests."""
    start_time = time.time()

    logger.info(f"Request: {request.method} {request.url.path}")

    response = await call_next(request)

    process_time = time.time() - start_time
    logger.info(
        f"Response: {response.status_code} - {request.method} {request.url.path} "
        f"completed in {process_time:.4f}s"
    )

    response.headers["X-Process-Time"] = str(process_time)

    return response


# Health check endpoint
@app.get("/health", tags=["Health"])
async def health_check() -> Dict[str, Any]:
    """
    Application health check endpoint.

    Returns:
        dict: Health status of the database, Redis and the websocket gateway
    """
    health_status = {
        "status": "healthy",
        "version": settings.app_version,
        "components": {}
    }

    try:
        db_health = db_manager.health_check()
        health_status["components"]["database"] = db_health

        redis_health = await redis_manager.health_check()
        health_status["components"]["redis"] = redis_health

        health_status["components"]["websocket"] = {
            "active_sessions": len(connection_manager.sessions),
            "online_users": len(connection_manager.presence.online_users()),
        }

        if (db_health.get("database") != "healthy" or
                redis_health.get("redis") not in ("healthy", "disabled")):
            health_status["status"] = "unhealthy"

    except Exception as e:
        logger.error(f"Health check failed: {e}")
        health_status["status"] = "unhealthy"
        health_status["error"] = str(e)

    return health_status


# Root endpoint
@app.get("/", tags=["Root"])
async def root() -> Dict[str, str]:
    """
    Root endpoint with application information.

    Returns:
        dict: Basic application information
    """
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "description": "Real-time chat service with REST history and a WebSocket gateway",
        "docs_url": "/docs" if settings.debug else "Documentation disabled in production",
        "health_url": "/health",
        "websocket_url": "/ws"
    }


# Register routers (routers already have their own prefixes defined)
app.include_router(chats_router, tags=["Chats"])
app.include_router(messages_router, tags=["Messages"])
app.include_router(gateway_router, tags=["Gateway"])


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "wanderchat.main:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info"
    )
