"""Rate/Dedup Store - shared counters, dedup flags, queues and sorted sets.

Every producer, drain loop and broadcaster instance coordinates through this
store. Its atomic primitives (INCR, SET NX, ZREM, RPOP) are the only
synchronization mechanism; no in-process lock is relied upon.

Usage:
    from core.cache.store import RedisStore

    store = RedisStore("redis://localhost:6379/0")
    count = store.incr_with_expiry("rate_limit:u1:minute:29000000", 60)
    if store.set_if_absent("broadcast:dedup:evt-1", "1", 60):
        ...
"""
import functools
import logging
from abc import ABC, abstractmethod
from typing import Optional, Dict, List, Tuple, Union
from urllib.parse import urlparse

from redis import Redis, RedisError
from tenacity import retry, stop_after_attempt, wait_fixed, before_sleep_log

logger = logging.getLogger(__name__)

Score = Union[int, float, str]

# INCR and set the TTL only when the key is created, so the bucket keeps its width
_INCR_WITH_EXPIRY = """
local value = redis.call('INCR', KEYS[1])
if value == 1 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return value
"""

# Count against several windows at once, or against none if any is already full
_INCR_WITHIN_LIMITS = """
for i, key in ipairs(KEYS) do
    local current = tonumber(redis.call('GET', key) or '0')
    if current >= tonumber(ARGV[2 * i]) then
        return 0
    end
end
for i, key in ipairs(KEYS) do
    if redis.call('INCR', key) == 1 then
        redis.call('EXPIRE', key, ARGV[2 * i - 1])
    end
end
return 1
"""

_RELEASE_LOCK = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

_ZADD_IF_GREATER = """
local current = redis.call('ZSCORE', KEYS[1], ARGV[2])
if current and tonumber(current) >= tonumber(ARGV[1]) then
    return 0
end
redis.call('ZADD', KEYS[1], ARGV[1], ARGV[2])
return 1
"""

_RPUSH_WITH_EXPIRY = """
local length = redis.call('RPUSH', KEYS[1], ARGV[1])
if length == 1 then
    redis.call('EXPIRE', KEYS[1], ARGV[2])
end
return length
"""


class StoreUnavailableError(Exception):
    """Raised when the backing store cannot be reached or rejects a command."""
    pass


def _sanitize_url(url: str) -> str:
    """Remove credentials from URL for safe logging."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            sanitized = parsed._replace(
                netloc=f"{parsed.username or ''}:*@{parsed.hostname}:{parsed.port or 6379}"
            )
            return sanitized.geturl()
        return url
    except ValueError:
        return url


class RateDedupStore(ABC):
    """
    Interface of the shared store.

    Any call may raise StoreUnavailableError. Callers decide the permissive
    default for their own stage.
    """

    @abstractmethod
    def ping(self) -> bool:
        pass

    # Strings and counters

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        pass

    @abstractmethod
    def delete(self, *keys: str) -> int:
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    def expire(self, key: str, ttl: int) -> bool:
        pass

    @abstractmethod
    def incr_with_expiry(self, key: str, ttl: int) -> int:
        """Atomically increment a counter; the TTL is set when the key is created."""
        pass

    @abstractmethod
    def incr_within_limits(self, counters: List[Tuple[str, int, int]]) -> bool:
        """
        Increment every (key, ttl, ceiling) counter, but only if none has
        reached its ceiling yet. Rejected calls leave all counters untouched.
        """
        pass

    @abstractmethod
    def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        """Write the key only if it does not exist. True when this call created it."""
        pass

    @abstractmethod
    def acquire_lock(self, key: str, token: str, ttl: int) -> bool:
        pass

    @abstractmethod
    def release_lock(self, key: str, token: str) -> bool:
        """Delete the lock only if it still holds our token."""
        pass

    # Sorted sets

    @abstractmethod
    def zadd(self, key: str, score: float, member: str, nx: bool = False) -> int:
        pass

    @abstractmethod
    def zadd_if_greater(self, key: str, member: str, score: float) -> bool:
        """Set member's score only if it raises it. True when the score was written."""
        pass

    @abstractmethod
    def range_by_score(
        self,
        key: str,
        min_score: Score,
        max_score: Score,
        limit: Optional[int] = None
    ) -> List[str]:
        pass

    @abstractmethod
    def zscore(self, key: str, member: str) -> Optional[float]:
        pass

    @abstractmethod
    def zrem(self, key: str, *members: str) -> int:
        pass

    @abstractmethod
    def zcard(self, key: str) -> int:
        pass

    @abstractmethod
    def zcount(self, key: str, min_score: Score, max_score: Score) -> int:
        pass

    @abstractmethod
    def zremrangebyscore(self, key: str, min_score: Score, max_score: Score) -> int:
        pass

    # Lists

    @abstractmethod
    def lpush(self, key: str, value: str) -> int:
        pass

    @abstractmethod
    def rpop(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def lpop(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def rpush_with_expiry(self, key: str, value: str, ttl: int) -> int:
        """Append to a list; the TTL is set when the list is created."""
        pass

    @abstractmethod
    def llen(self, key: str) -> int:
        pass

    @abstractmethod
    def lrange(self, key: str, start: int, end: int) -> List[str]:
        pass

    # Sets and hashes

    @abstractmethod
    def sadd(self, key: str, *members: str) -> int:
        pass

    @abstractmethod
    def srem(self, key: str, *members: str) -> int:
        pass

    @abstractmethod
    def smembers(self, key: str) -> List[str]:
        pass

    @abstractmethod
    def hset(self, key: str, mapping: Dict[str, str]) -> int:
        pass

    @abstractmethod
    def hgetall(self, key: str) -> Dict[str, str]:
        pass


def _guard(func):
    """Translate redis errors into StoreUnavailableError."""

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except RedisError as e:
            raise StoreUnavailableError(f"{func.__name__} failed: {e}") from e

    return wrapper


class RedisStore(RateDedupStore):
    """RateDedupStore backed by Redis."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        password: Optional[str] = None,
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None
    ):
        self.redis_url = redis_url
        self._redis = client or Redis.from_url(
            redis_url,
            password=password,
            decode_responses=True,
            socket_connect_timeout=socket_timeout,
            socket_timeout=socket_timeout
        )
        self._incr_script = self._redis.register_script(_INCR_WITH_EXPIRY)
        self._limits_script = self._redis.register_script(_INCR_WITHIN_LIMITS)
        self._release_script = self._redis.register_script(_RELEASE_LOCK)
        self._zadd_gt_script = self._redis.register_script(_ZADD_IF_GREATER)
        self._rpush_script = self._redis.register_script(_RPUSH_WITH_EXPIRY)

    @property
    def safe_url(self) -> str:
        return _sanitize_url(self.redis_url)

    def ping(self) -> bool:
        try:
            return bool(self._redis.ping())
        except RedisError:
            return False

    @_guard
    def get(self, key: str) -> Optional[str]:
        return self._redis.get(key)

    @_guard
    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        self._redis.set(key, value, ex=ttl)

    @_guard
    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(self._redis.delete(*keys))

    @_guard
    def exists(self, key: str) -> bool:
        return bool(self._redis.exists(key))

    @_guard
    def expire(self, key: str, ttl: int) -> bool:
        return bool(self._redis.expire(key, ttl))

    @_guard
    def incr_with_expiry(self, key: str, ttl: int) -> int:
        return int(self._incr_script(keys=[key], args=[ttl]))

    @_guard
    def incr_within_limits(self, counters: List[Tuple[str, int, int]]) -> bool:
        if not counters:
            return True
        args: List[int] = []
        for _, ttl, ceiling in counters:
            args.extend([ttl, ceiling])
        return bool(self._limits_script(keys=[key for key, _, _ in counters], args=args))

    @_guard
    def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        return bool(self._redis.set(key, value, nx=True, ex=ttl))

    def acquire_lock(self, key: str, token: str, ttl: int) -> bool:
        return self.set_if_absent(key, token, ttl)

    @_guard
    def release_lock(self, key: str, token: str) -> bool:
        return bool(self._release_script(keys=[key], args=[token]))

    @_guard
    def zadd(self, key: str, score: float, member: str, nx: bool = False) -> int:
        return int(self._redis.zadd(key, {member: score}, nx=nx))

    @_guard
    def zadd_if_greater(self, key: str, member: str, score: float) -> bool:
        return bool(self._zadd_gt_script(keys=[key], args=[score, member]))

    @_guard
    def range_by_score(
        self,
        key: str,
        min_score: Score,
        max_score: Score,
        limit: Optional[int] = None
    ) -> List[str]:
        if limit is not None:
            return list(self._redis.zrangebyscore(key, min_score, max_score, start=0, num=limit))
        return list(self._redis.zrangebyscore(key, min_score, max_score))

    @_guard
    def zscore(self, key: str, member: str) -> Optional[float]:
        return self._redis.zscore(key, member)

    @_guard
    def zrem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(self._redis.zrem(key, *members))

    @_guard
    def zcard(self, key: str) -> int:
        return int(self._redis.zcard(key))

    @_guard
    def zcount(self, key: str, min_score: Score, max_score: Score) -> int:
        return int(self._redis.zcount(key, min_score, max_score))

    @_guard
    def zremrangebyscore(self, key: str, min_score: Score, max_score: Score) -> int:
        return int(self._redis.zremrangebyscore(key, min_score, max_score))

    @_guard
    def lpush(self, key: str, value: str) -> int:
        return int(self._redis.lpush(key, value))

    @_guard
    def rpop(self, key: str) -> Optional[str]:
        return self._redis.rpop(key)

    @_guard
    def lpop(self, key: str) -> Optional[str]:
        return self._redis.lpop(key)

    @_guard
    def rpush_with_expiry(self, key: str, value: str, ttl: int) -> int:
        return int(self._rpush_script(keys=[key], args=[value, ttl]))

    @_guard
    def llen(self, key: str) -> int:
        return int(self._redis.llen(key))

    @_guard
    def lrange(self, key: str, start: int, end: int) -> List[str]:
        return list(self._redis.lrange(key, start, end))

    @_guard
    def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(self._redis.sadd(key, *members))

    @_guard
    def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(self._redis.srem(key, *members))

    @_guard
    def smembers(self, key: str) -> List[str]:
        return sorted(self._redis.smembers(key))

    @_guard
    def hset(self, key: str, mapping: Dict[str, str]) -> int:
        return int(self._redis.hset(key, mapping=mapping))

    @_guard
    def hgetall(self, key: str) -> Dict[str, str]:
        return dict(self._redis.hgetall(key))


def wait_for_store(store: RateDedupStore, attempts: int = 5, wait_seconds: float = 2.0) -> bool:
    """Block until the store answers a ping, retrying with a fixed wait.

    Returns:
        True once reachable. Raises StoreUnavailableError after the last attempt.
    """

    @retry(
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(wait_seconds),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )
    def _ping():
        if not store.ping():
            raise StoreUnavailableError("Store did not answer ping")
        return True

    return _ping()
