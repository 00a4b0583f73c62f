import logging
import threading
import time
from functools import wraps
from typing import Dict, List, Optional, Sequence, Tuple

import redis

from ..core.config import settings

logger = logging.getLogger(__name__)


def handle_redis_errors(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except redis.ConnectionError as e:
            logger.error(f"Redis connection error: {str(e)}")
            raise
        except redis.RedisError as e:
            logger.error(f"Redis error: {str(e)}")
            raise
    return wrapper


class RedisCacheBackend:
    """Cache backend on a shared redis connection pool."""

    _pool: Optional[redis.ConnectionPool] = None

    def __init__(self, client: Optional[redis.Redis] = None):
        self.client = client or redis.Redis(connection_pool=self.get_pool())

    @classmethod
    def get_pool(cls) -> redis.ConnectionPool:
        if cls._pool is None:
            cls._pool = redis.ConnectionPool.from_url(
                settings.REDIS_URL,
                decode_responses=True,
                socket_timeout=settings.REDIS_TIMEOUT,
                socket_connect_timeout=settings.REDIS_TIMEOUT,
            )
        return cls._pool

    @handle_redis_errors
    def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    @handle_redis_errors
    def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        return self.client.mget(list(keys))

    @handle_redis_errors
    def set(self, key: str, value: str, ttl: int) -> None:
        self.client.setex(key, ttl, value)

    @handle_redis_errors
    def incr(self, key: str) -> int:
        return self.client.incr(key)

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis ping failed: {str(e)}")
            return False


class MemoryCacheBackend:
    """Process-local backend for development and tests. Not shared between workers."""

    def __init__(self, clock=time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _live_value(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live_value(key)

    def get_many(self, keys: Sequence[str]) -> List[Optional[str]]:
        with self._lock:
            return [self._live_value(key) for key in keys]

    def _purge_expired(self) -> None:
        # Entries left behind by a tag version bump are never read again
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._data.items() if expires_at is not None and expires_at <= now]
        for key in expired:
            del self._data[key]

    def set(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            self._purge_expired()
            self._data[key] = (value, self._clock() + ttl)

    def incr(self, key: str) -> int:
        with self._lock:
            current = self._live_value(key)
            value = int(current or 0) + 1
            expires_at = self._data[key][1] if key in self._data else None
            self._data[key] = (str(value), expires_at)
            return value

    def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        return len(self._data)
