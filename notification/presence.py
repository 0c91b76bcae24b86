"""Presence tracking shared across processes through the store."""

import logging
from typing import Iterable, List, Optional

from core.cache.store import RateDedupStore, StoreUnavailableError
from core.clock import Clock, SystemClock
from notification.broadcaster import RealtimeBroadcaster
from notification.interfaces import FollowerDirectory, Presence, UnwiredFollowerDirectory
from notification.models import BroadcastReport

logger = logging.getLogger(__name__)


class PresenceManager:
    """
    Maps users to online/offline status and their live connection handles.

    A user is online while at least one handle is registered. Handle sets
    expire after `ttl_seconds` without a heartbeat so a crashed process
    cannot leave users online forever.
    """

    HANDLES_KEY = "presence:handles:{user_id}"
    ONLINE_INDEX_KEY = "presence:online"

    def __init__(
        self,
        store: RateDedupStore,
        broadcaster: Optional[RealtimeBroadcaster] = None,
        followers: Optional[FollowerDirectory] = None,
        ttl_seconds: int = 300,
        clock: Optional[Clock] = None
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.followers = followers or UnwiredFollowerDirectory()
        self.ttl_seconds = ttl_seconds
        self.clock = clock or SystemClock()

    def set_online(self, user_id: str, handle: str) -> None:
        key = self.HANDLES_KEY.format(user_id=user_id)
        try:
            was_online = self.store.zscore(self.ONLINE_INDEX_KEY, user_id) is not None
            self.store.sadd(key, handle)
            self.store.expire(key, self.ttl_seconds)
            self.store.zadd(self.ONLINE_INDEX_KEY, self.clock.timestamp(), user_id)
        except StoreUnavailableError as e:
            logger.warning(f"Could not mark {user_id} online: {e}")
            return
        if not was_online:
            self.notify_followers(user_id, 'online')

    def heartbeat(self, user_id: str) -> None:
        try:
            self.store.expire(self.HANDLES_KEY.format(user_id=user_id), self.ttl_seconds)
            self.store.zadd(self.ONLINE_INDEX_KEY, self.clock.timestamp(), user_id)
        except StoreUnavailableError as e:
            logger.warning(f"Presence heartbeat failed for {user_id}: {e}")

    def set_offline(self, user_id: str, handle: str) -> None:
        key = self.HANDLES_KEY.format(user_id=user_id)
        try:
            self.store.srem(key, handle)
            if self.store.smembers(key):
                return
            self.store.zrem(self.ONLINE_INDEX_KEY, user_id)
        except StoreUnavailableError as e:
            logger.warning(f"Could not mark {user_id} offline: {e}")
            return
        self.notify_followers(user_id, 'offline')

    def presence_of(self, user_id: str) -> Presence:
        try:
            handles = self.store.smembers(self.HANDLES_KEY.format(user_id=user_id))
        except StoreUnavailableError as e:
            logger.warning(f"Presence lookup failed for {user_id}: {e}")
            return Presence(online=False)
        return Presence(online=bool(handles), handles=handles)

    def active_users(self, user_ids: Iterable[str]) -> List[str]:
        """Subset of `user_ids` seen within the presence TTL."""
        cutoff = self.clock.timestamp() - self.ttl_seconds
        try:
            self.store.zremrangebyscore(self.ONLINE_INDEX_KEY, '-inf', cutoff)
            online = set(self.store.range_by_score(self.ONLINE_INDEX_KEY, cutoff, '+inf'))
        except StoreUnavailableError as e:
            logger.warning(f"Active user lookup failed: {e}")
            return []
        return [u for u in user_ids if u in online]

    def notify_followers(self, user_id: str, status: str) -> Optional[BroadcastReport]:
        if self.broadcaster is None:
            return None
        if not self.followers.is_wired:
            logger.debug(f"Follower lookup not wired, skipping presence fan-out for {user_id}")
            return None

        try:
            followers = self.followers.followers_of(user_id)
        except StoreUnavailableError as e:
            logger.warning(f"Follower lookup failed for {user_id}: {e}")
            return None
        if not followers:
            return None
        now = self.clock.now()
        return self.broadcaster.broadcast(
            f"presence:{user_id}:{status}:{int(now.timestamp())}",
            followers,
            {'userId': user_id, 'status': status, 'timestamp': now.isoformat()},
            event_name='presence_update'
        )
