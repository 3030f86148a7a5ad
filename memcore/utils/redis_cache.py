"""
Redis client wrapper: the key-value cache used for insights and usage counters.
"""

from typing import Dict, List, Optional

import redis

from .config import RedisConfig
from .errors import StoreError
from .logging_config import get_logger

logger = get_logger(__name__)


class RedisCacheError(StoreError):
    """Custom exception for Redis cache errors."""
    pass


class RedisCache:
    """Thin Redis wrapper translating redis-py failures into RedisCacheError."""

    def __init__(self, config: RedisConfig, client: Optional[redis.Redis] = None):
        """
        Initialize Redis cache client.

        Args:
            config: RedisConfig instance with connection parameters
            client: Optional pre-built redis client (must decode responses)
        """
        self.config = config
        self.client = client or redis.Redis.from_url(config.url,
                                                     decode_responses=True,
                                                     socket_timeout=config.socket_timeout)
        logger.info('Initialized Redis cache client')

    def get(self, key: str) -> Optional[str]:
        try:
            return self.client.get(key)
        except redis.RedisError as e:
            logger.error(f'Redis GET failed for {key}: {e}')
            raise RedisCacheError(f'Failed to read {key}: {e}')

    def setex(self, key: str, ttl_seconds: int, value: str) -> None:
        try:
            self.client.setex(key, ttl_seconds, value)
        except redis.RedisError as e:
            logger.error(f'Redis SETEX failed for {key}: {e}')
            raise RedisCacheError(f'Failed to write {key}: {e}')

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(self.client.delete(*keys))
        except redis.RedisError as e:
            logger.error(f'Redis DEL failed: {e}')
            raise RedisCacheError(f'Failed to delete keys: {e}')

    def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        try:
            return int(self.client.hincrby(key, field, amount))
        except redis.RedisError as e:
            logger.error(f'Redis HINCRBY failed for {key}: {e}')
            raise RedisCacheError(f'Failed to increment {key}.{field}: {e}')

    def hset(self, key: str, mapping: Dict[str, str]) -> None:
        try:
            self.client.hset(key, mapping=mapping)
        except redis.RedisError as e:
            logger.error(f'Redis HSET failed for {key}: {e}')
            raise RedisCacheError(f'Failed to write hash {key}: {e}')

    def hgetall(self, key: str) -> Dict[str, str]:
        try:
            return self.client.hgetall(key) or {}
        except redis.RedisError as e:
            logger.error(f'Redis HGETALL failed for {key}: {e}')
            raise RedisCacheError(f'Failed to read hash {key}: {e}')

    def expire(self, key: str, ttl_seconds: int) -> None:
        try:
            self.client.expire(key, ttl_seconds)
        except redis.RedisError as e:
            logger.error(f'Redis EXPIRE failed for {key}: {e}')
            raise RedisCacheError(f'Failed to set expiry on {key}: {e}')

    def scan_keys(self, pattern: str) -> List[str]:
        """All keys matching a glob pattern, via incremental SCAN."""
        try:
            return list(self.client.scan_iter(match=pattern, count=500))
        except redis.RedisError as e:
            logger.error(f'Redis SCAN failed for {pattern}: {e}')
            raise RedisCacheError(f'Failed to scan {pattern}: {e}')

    def health_check(self) -> bool:
        try:
            return bool(self.client.ping())
        except Exception as e:
            logger.error(f'Redis health check failed: {e}')
            return False
