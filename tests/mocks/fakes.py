#!/usr/bin/env python3
"""
Test fakes - in-memory stand-ins for the store, clock, providers and transport.

The in-memory store follows the semantics of the Redis store closely enough
for the pipeline (pop semantics, NX writes, score ranges) but ignores TTLs.
"""
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from core.cache.store import RateDedupStore, StoreUnavailableError
from core.clock import Clock
from notification.channels import PushProvider
from notification.interfaces import Presence, RealtimeTransport
from notification.models import DeliveryResult, RenderedMessage


def _score(value) -> float:
    if value in ('-inf', float('-inf')):
        return float('-inf')
    if value in ('+inf', 'inf', float('inf')):
        return float('inf')
    return float(value)


class InMemoryStore(RateDedupStore):
    """Dict-backed RateDedupStore. Set `available = False` to simulate an outage."""

    def __init__(self):
        self.data: Dict[str, Any] = {}
        self.ttls: Dict[str, int] = {}
        self.available = True
        self._lock = threading.RLock()

    def _check(self):
        if not self.available:
            raise StoreUnavailableError("store is down")

    def ping(self) -> bool:
        return self.available

    def get(self, key: str) -> Optional[str]:
        self._check()
        value = self.data.get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        self._check()
        self.data[key] = str(value)
        if ttl:
            self.ttls[key] = ttl

    def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    def exists(self, key: str) -> bool:
        self._check()
        return key in self.data

    def expire(self, key: str, ttl: int) -> bool:
        self._check()
        if key not in self.data:
            return False
        self.ttls[key] = ttl
        return True

    def incr_with_expiry(self, key: str, ttl: int) -> int:
        self._check()
        with self._lock:
            value = int(self.data.get(key, 0)) + 1
            self.data[key] = str(value)
            if value == 1:
                self.ttls[key] = ttl
            return value

    def incr_within_limits(self, counters: List[Tuple[str, int, int]]) -> bool:
        self._check()
        with self._lock:
            if any(int(self.data.get(key, 0)) >= ceiling for key, _, ceiling in counters):
                return False
            for key, ttl, _ in counters:
                self.incr_with_expiry(key, ttl)
            return True

    def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        self._check()
        with self._lock:
            if key in self.data:
                return False
            self.data[key] = str(value)
            self.ttls[key] = ttl
            return True

    def acquire_lock(self, key: str, token: str, ttl: int) -> bool:
        return self.set_if_absent(key, token, ttl)

    def release_lock(self, key: str, token: str) -> bool:
        self._check()
        with self._lock:
            if self.data.get(key) == token:
                del self.data[key]
                return True
            return False

    # Sorted sets

    def _zset(self, key: str) -> Dict[str, float]:
        return self.data.setdefault(key, {})

    def zadd(self, key: str, score: float, member: str, nx: bool = False) -> int:
        self._check()
        with self._lock:
            zset = self._zset(key)
            if member in zset:
                if not nx:
                    zset[member] = float(score)
                return 0
            zset[member] = float(score)
            return 1

    def zadd_if_greater(self, key: str, member: str, score: float) -> bool:
        self._check()
        with self._lock:
            zset = self._zset(key)
            current = zset.get(member)
            if current is not None and current >= score:
                return False
            zset[member] = float(score)
            return True

    def range_by_score(self, key, min_score, max_score, limit=None) -> List[str]:
        self._check()
        low, high = _score(min_score), _score(max_score)
        members = sorted(
            ((s, m) for m, s in self.data.get(key, {}).items() if low <= s <= high)
        )
        result = [m for _, m in members]
        return result[:limit] if limit is not None else result

    def zscore(self, key: str, member: str) -> Optional[float]:
        self._check()
        return self.data.get(key, {}).get(member)

    def zrem(self, key: str, *members: str) -> int:
        self._check()
        with self._lock:
            zset = self.data.get(key, {})
            removed = 0
            for member in members:
                if zset.pop(member, None) is not None:
                    removed += 1
            return removed

    def zcard(self, key: str) -> int:
        self._check()
        return len(self.data.get(key, {}))

    def zcount(self, key, min_score, max_score) -> int:
        return len(self.range_by_score(key, min_score, max_score))

    def zremrangebyscore(self, key, min_score, max_score) -> int:
        members = self.range_by_score(key, min_score, max_score)
        return self.zrem(key, *members) if members else 0

    # Lists

    def _list(self, key: str) -> List[str]:
        return self.data.setdefault(key, [])

    def lpush(self, key: str, value: str) -> int:
        self._check()
        with self._lock:
            items = self._list(key)
            items.insert(0, value)
            return len(items)

    def rpop(self, key: str) -> Optional[str]:
        self._check()
        with self._lock:
            items = self.data.get(key)
            return items.pop() if items else None

    def lpop(self, key: str) -> Optional[str]:
        self._check()
        with self._lock:
            items = self.data.get(key)
            return items.pop(0) if items else None

    def rpush_with_expiry(self, key: str, value: str, ttl: int) -> int:
        self._check()
        with self._lock:
            items = self._list(key)
            items.append(value)
            if len(items) == 1:
                self.ttls[key] = ttl
            return len(items)

    def llen(self, key: str) -> int:
        self._check()
        return len(self.data.get(key, []))

    def lrange(self, key: str, start: int, end: int) -> List[str]:
        self._check()
        items = self.data.get(key, [])
        return items[start:] if end == -1 else items[start:end + 1]

    # Sets and hashes

    def sadd(self, key: str, *members: str) -> int:
        self._check()
        current = self.data.setdefault(key, set())
        added = len(set(members) - current)
        current.update(members)
        return added

    def srem(self, key: str, *members: str) -> int:
        self._check()
        current = self.data.get(key, set())
        removed = len(current & set(members))
        current.difference_update(members)
        if not current:
            self.data.pop(key, None)
        return removed

    def smembers(self, key: str) -> List[str]:
        self._check()
        return sorted(self.data.get(key, set()))

    def hset(self, key: str, mapping: Dict[str, str]) -> int:
        self._check()
        current = self.data.setdefault(key, {})
        added = len(set(mapping) - set(current))
        current.update(mapping)
        return added

    def hgetall(self, key: str) -> Dict[str, str]:
        self._check()
        return dict(self.data.get(key, {}))


class FrozenClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)


class RecordingProvider(PushProvider):
    """Push provider that records every send and always succeeds."""

    def __init__(self, platform: str = 'android', config=None):
        super().__init__(platform, config)
        self.sent: List[Tuple[str, RenderedMessage, Dict[str, Any]]] = []

    @property
    def provider_type(self) -> str:
        return 'recording'

    def send(self, token: str, message: RenderedMessage, options: Dict[str, Any]) -> DeliveryResult:
        self.sent.append((token, message, options))
        return DeliveryResult(destination=token, success=True)


class FailingProvider(PushProvider):
    """Push provider whose sends fail (or raise, when `raises` is set)."""

    def __init__(self, platform: str = 'ios', config=None, raises: bool = False, invalid_token: bool = False):
        super().__init__(platform, config)
        self.raises = raises
        self.invalid_token = invalid_token
        self.calls = 0

    @property
    def provider_type(self) -> str:
        return 'failing'

    def send(self, token: str, message: RenderedMessage, options: Dict[str, Any]) -> DeliveryResult:
        self.calls += 1
        if self.raises:
            raise RuntimeError("gateway exploded")
        return DeliveryResult(destination=token, success=False, error='rejected',
                              invalid_token=self.invalid_token)


class RecordingTransport(RealtimeTransport):
    """Realtime transport with a fixed set of online users."""

    def __init__(self, online: Optional[List[str]] = None, broken: Optional[List[str]] = None):
        self.online = set(online or [])
        self.broken = set(broken or [])
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []

    def broadcast_to_user(self, user_id: str, event_name: str, payload: Dict[str, Any]) -> int:
        if user_id in self.broken:
            raise ConnectionError(f"socket for {user_id} is gone")
        if user_id not in self.online:
            return 0
        self.sent.append((user_id, event_name, payload))
        return 1

    def presence_of(self, user_id: str) -> Presence:
        return Presence(online=user_id in self.online)

    def recipients(self) -> List[str]:
        return [user_id for user_id, _, _ in self.sent]
