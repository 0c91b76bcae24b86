"""
Store-backed repositories for the per-user data the pipeline reads.

These propagate StoreUnavailableError; each pipeline stage decides its own
permissive default.
"""

import json
import logging
from typing import Dict, List, Optional

from core.cache.store import RateDedupStore
from notification.interfaces import FollowerDirectory
from notification.models import DeviceToken
from notification.preferences import NotificationPreferences

logger = logging.getLogger(__name__)

VALID_PLATFORMS = ('android', 'ios', 'web')


class PreferenceRepository:
    KEY = "user:preferences:{user_id}"

    def __init__(self, store: RateDedupStore):
        self.store = store

    def get(self, user_id: str) -> Optional[NotificationPreferences]:
        raw = self.store.get(self.KEY.format(user_id=user_id))
        if not raw:
            return None
        return NotificationPreferences.model_validate_json(raw)

    def save(self, preferences: NotificationPreferences) -> None:
        self.store.set(self.KEY.format(user_id=preferences.user_id), preferences.model_dump_json())

    def delete(self, user_id: str) -> None:
        self.store.delete(self.KEY.format(user_id=user_id))


class DeviceTokenRepository:
    """Push tokens per user, one hash field per token."""
    KEY = "user:devices:{user_id}"

    def __init__(self, store: RateDedupStore):
        self.store = store

    def register(self, user_id: str, token: str, platform: str) -> DeviceToken:
        if platform not in VALID_PLATFORMS:
            raise ValueError(f"Unsupported platform: {platform}")
        device = DeviceToken(token=token, platform=platform, is_active=True)
        self.store.hset(
            self.KEY.format(user_id=user_id),
            {token: json.dumps({'platform': platform, 'is_active': True})}
        )
        logger.info(f"Registered {platform} device for user {user_id}")
        return device

    def deactivate(self, user_id: str, token: str) -> bool:
        key = self.KEY.format(user_id=user_id)
        entries = self.store.hgetall(key)
        if token not in entries:
            return False
        data = json.loads(entries[token])
        data['is_active'] = False
        self.store.hset(key, {token: json.dumps(data)})
        logger.info(f"Deactivated device token for user {user_id}")
        return True

    def list_all(self, user_id: str) -> List[DeviceToken]:
        entries = self.store.hgetall(self.KEY.format(user_id=user_id))
        devices = []
        for token, raw in entries.items():
            data = json.loads(raw)
            devices.append(DeviceToken(
                token=token,
                platform=data.get('platform', 'web'),
                is_active=data.get('is_active', True)
            ))
        return devices

    def active_tokens(self, user_id: str) -> List[DeviceToken]:
        return [d for d in self.list_all(user_id) if d.is_active]


class EngagementRepository:
    """
    Per-user engagement history used by importance scoring.

    Hash fields: one count per notification type the user interacted with,
    plus 'delivered' and 'opened' totals for the open rate.
    """
    KEY = "engagement:{user_id}"

    def __init__(self, store: RateDedupStore):
        self.store = store

    def get(self, user_id: str) -> Dict[str, float]:
        raw = self.store.hgetall(self.KEY.format(user_id=user_id))
        return {k: float(v) for k, v in raw.items()}

    def save(self, user_id: str, values: Dict[str, float]) -> None:
        self.store.hset(self.KEY.format(user_id=user_id), {k: str(v) for k, v in values.items()})

    def open_rate(self, history: Dict[str, float]) -> Optional[float]:
        delivered = history.get('delivered', 0)
        if delivered <= 0:
            return None
        return min(1.0, history.get('opened', 0) / delivered)

    def prefers_type(self, history: Dict[str, float], notification_type: str) -> bool:
        """True when this type's interaction count beats the user's average across types."""
        counts = {k: v for k, v in history.items() if k not in ('delivered', 'opened')}
        if not counts or notification_type not in counts:
            return False
        average = sum(counts.values()) / len(counts)
        return counts[notification_type] > average


class SenderReputationRepository:
    KEY = "reputation:{sender_id}"

    def __init__(self, store: RateDedupStore, default: float = 0.8, ttl_seconds: int = 86400):
        self.store = store
        self.default = default
        self.ttl_seconds = ttl_seconds

    def get(self, sender_id: str) -> float:
        key = self.KEY.format(sender_id=sender_id)
        raw = self.store.get(key)
        if raw is not None:
            return float(raw)
        # Cache the default so unknown senders cost one lookup per day
        self.store.set(key, str(self.default), ttl=self.ttl_seconds)
        return self.default

    def set(self, sender_id: str, reputation: float) -> None:
        self.store.set(
            self.KEY.format(sender_id=sender_id),
            str(max(0.0, min(1.0, reputation))),
            ttl=self.ttl_seconds
        )


class BlacklistRepository:
    KEY = "blacklist:{sender_id}"

    def __init__(self, store: RateDedupStore):
        self.store = store

    def is_blacklisted(self, sender_id: str) -> bool:
        return self.store.exists(self.KEY.format(sender_id=sender_id))

    def add(self, sender_id: str, ttl_seconds: Optional[int] = None) -> None:
        self.store.set(self.KEY.format(sender_id=sender_id), "1", ttl=ttl_seconds)

    def remove(self, sender_id: str) -> None:
        self.store.delete(self.KEY.format(sender_id=sender_id))


class StoreFollowerDirectory(FollowerDirectory):
    """Follower sets maintained by the domain service at followers:{user_id}."""
    KEY = "followers:{user_id}"

    def __init__(self, store: RateDedupStore):
        self.store = store

    def followers_of(self, user_id: str) -> List[str]:
        return self.store.smembers(self.KEY.format(user_id=user_id))
