"""
Redis connection management and caching helpers.

Redis holds the token revocation list written by the auth service and backs
the health endpoint. Presence stays in-process (see ``utils/presence.py``).
"""
import logging
from typing import Optional, Dict, Any

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError, RedisError

from wanderchat.core.config import settings

logger = logging.getLogger(__name__)


class RedisManager:
    """Redis connection manager with connection pooling and health monitoring."""

    def __init__(self):
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None
        self._is_connected = False

    async def connect(self):
        """Initialize Redis connection pool and client."""
        try:
            self._pool = ConnectionPool.from_url(
                settings.redis_url,
                max_connections=20,
                retry_on_timeout=True,
                socket_keepalive=True,
                health_check_interval=30,
                decode_responses=True
            )
            self._client = Redis(connection_pool=self._pool)

            # Test connection
            await self._client.ping()
            self._is_connected = True

            logger.info("Redis connection established successfully")

        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            self._is_connected = False
            raise

    async def disconnect(self):
        """Close Redis connections and cleanup resources."""
        try:
            if self._client:
                await self._client.aclose()
            if self._pool:
                await self._pool.disconnect()

            self._is_connected = False
            logger.info("Redis connections closed successfully")

        except Exception as e:
            logger.error(f"Error closing Redis connections: {e}")

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def client(self) -> Redis:
        """Get the main Redis client."""
        if not self._is_connected or not self._client:
            raise ConnectionError("Redis client not connected")
        return self._client

    async def health_check(self) -> Dict[str, Any]:
        """
        Perform Redis health check.

        Returns:
            dict: Health check results
        """
        health_status = {
            "redis": "unknown",
            "details": {}
        }

        if not settings.redis_enabled:
            health_status["redis"] = "disabled"
            return health_status

        try:
            if self._client:
                pong = await self._client.ping()
                if pong:
                    health_status["redis"] = "healthy"
                    info = await self._client.info()
                    health_status["details"] = {
                        "redis_version": info.get("redis_version"),
                        "connected_clients": info.get("connected_clients"),
                        "used_memory_human": info.get("used_memory_human"),
                    }
                else:
                    health_status["redis"] = "unhealthy"
            else:
                health_status["redis"] = "disconnected"

        except Exception as e:
            health_status["redis"] = "unhealthy"
            health_status["details"]["error"] = str(e)
            logger.error(f"Redis health check failed: {e}")

        return health_status


class RedisCache:
    """Redis caching utilities."""

    def __init__(self, redis_manager: RedisManager):
        self.redis_manager = redis_manager

    async def exists(self, key: str) -> bool:
        """Check if key exists in cache."""
        try:
            return await self.redis_manager.client.exists(key) > 0
        except RedisError as e:
            logger.error(f"Redis EXISTS error for key {key}: {e}")
            return False


# Global Redis manager instance
redis_manager = RedisManager()

# Global utility instances
redis_cache = RedisCache(redis_manager)


async def init_redis():
    """Initialize Redis connections."""
    await redis_manager.connect()


async def close_redis():
    """Close Redis connections."""
    await redis_manager.disconnect()
