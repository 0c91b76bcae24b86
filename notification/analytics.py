"""
Filtering analytics - fire-and-forget counters for every filtering outcome.

Recording never raises: a failed counter write is logged and dropped.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from core.cache.store import RateDedupStore, StoreUnavailableError
from core.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

METRICS_TTL_SECONDS = 30 * 24 * 3600
ACTIONS = ('allowed', 'blocked', 'delayed', 'batched')
BLOCK_REASONS = ('spam_detected', 'user_preferences', 'frequency_limited')


class FilteringAnalytics:

    def __init__(self, store: RateDedupStore, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or SystemClock()

    @staticmethod
    def _day(moment: datetime) -> str:
        return moment.strftime("%Y-%m-%d")

    @staticmethod
    def _hour(moment: datetime) -> str:
        return moment.strftime("%Y-%m-%dT%H")

    def record(self, action: str, reason: str, user_id: str) -> None:
        """Count one filtering outcome by (day, action, reason), by hour and per user."""
        now = self.clock.now()
        day = self._day(now)
        keys = [
            f"filtering_metrics:total:{day}",
            f"filtering_metrics:{action}:{reason}:{day}",
            f"filtering_metrics:{action}:{reason}:{self._hour(now)}",
            f"user_filtering_metrics:{user_id}:{action}:{day}",
        ]
        try:
            for key in keys:
                self.store.incr_with_expiry(key, METRICS_TTL_SECONDS)
        except StoreUnavailableError as e:
            logger.warning(f"Could not record filtering metric {action}/{reason}: {e}")
        except Exception as e:
            logger.warning(f"Unexpected error recording filtering metric: {e}")

    def _read(self, key: str) -> int:
        raw = self.store.get(key)
        return int(raw) if raw else 0

    def get_stats(self, day: Optional[str] = None) -> Dict[str, Any]:
        """Counters for one day, keyed by action and reason."""
        day = day or self._day(self.clock.now())
        try:
            blocked = {reason: self._read(f"filtering_metrics:blocked:{reason}:{day}")
                       for reason in BLOCK_REASONS}
            stats = {
                'day': day,
                'total': self._read(f"filtering_metrics:total:{day}"),
                'blocked': blocked,
                'delayed': self._read(f"filtering_metrics:delayed:quiet_hours:{day}"),
                'batched': self._read(f"filtering_metrics:batched:low_importance:{day}"),
                'allowed': self._read(f"filtering_metrics:allowed:passed:{day}"),
                'available': True,
            }
        except StoreUnavailableError as e:
            logger.warning(f"Could not read filtering stats for {day}: {e}")
            return {'day': day, 'available': False}
        return stats

    def effectiveness(self, day: Optional[str] = None) -> Dict[str, Any]:
        """Share of processed notifications that were blocked on a day."""
        stats = self.get_stats(day)
        if not stats.get('available'):
            return {'day': stats['day'], 'total_processed': 0, 'total_blocked': 0, 'filtering_rate': 0.0}
        total_blocked = sum(stats['blocked'].values())
        total = stats['total']
        return {
            'day': stats['day'],
            'total_processed': total,
            'total_blocked': total_blocked,
            'spam_blocked': stats['blocked']['spam_detected'],
            'frequency_limited': stats['blocked']['frequency_limited'],
            'user_preference_blocked': stats['blocked']['user_preferences'],
            'filtering_rate': total_blocked / total if total else 0.0,
        }

    def user_summary(self, user_id: str, day: Optional[str] = None) -> Dict[str, int]:
        day = day or self._day(self.clock.now())
        try:
            return {action: self._read(f"user_filtering_metrics:{user_id}:{action}:{day}")
                    for action in ACTIONS}
        except StoreUnavailableError as e:
            logger.warning(f"Could not read filtering metrics for user {user_id}: {e}")
            return {action: 0 for action in ACTIONS}
