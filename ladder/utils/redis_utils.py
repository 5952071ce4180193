"""
Redis utility module for the realtime broadcast connection.

An empty REDIS_URL means the bot runs single-process and broadcasts in memory.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ladder.config import Config

logger = logging.getLogger(__name__)


class RedisUtils:
    """Centralized Redis configuration and connection utilities."""

    @staticmethod
    def get_secure_redis_url() -> Optional[str]:
        """Get the configured Redis URL if it passes security validation."""
        redis_url = Config.REDIS_URL
        if not redis_url:
            return None

        if RedisUtils._validate_redis_security(redis_url):
            return redis_url

        logger.error("REDIS_URL contains insecure configuration")
        return None

    @staticmethod
    def _validate_redis_security(redis_url: str) -> bool:
        """Validate that a Redis URL meets security requirements."""
        if not redis_url.startswith(('redis://', 'rediss://')):
            logger.error(f"Unsupported Redis URL scheme: {redis_url.split(':', 1)[0]}")
            return False

        if not Config.DEBUG:
            # Production mode - enforce TLS and credentials for anything off-box
            if redis_url.startswith(('redis://localhost', 'redis://127.0.0.1')):
                return True
            if not redis_url.startswith('rediss://'):
                logger.error("Production Redis must use rediss:// (TLS) protocol")
                return False
            if '@' not in redis_url:
                logger.error("Production Redis must include authentication credentials")
                return False
        elif not redis_url.startswith('rediss://'):
            logger.warning("Development mode: using unencrypted Redis connection")

        return True

    @staticmethod
    async def create_redis_client() -> Optional[redis.Redis]:
        """Create and ping a Redis client; returns None when Redis is not configured or unreachable."""
        redis_url = RedisUtils.get_secure_redis_url()
        if not redis_url:
            return None

        try:
            client = redis.from_url(redis_url, decode_responses=True)
            await client.ping()
            logger.info("Successfully connected to Redis")
            return client
        except (RedisError, OSError) as e:
            logger.error(f"Failed to connect to Redis: {e}")
            return None
