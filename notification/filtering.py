"""
Notification Filtering Engine

Decides, per intent, whether to allow, block, delay or batch it, and
computes an importance score in [0, 1].

Pipeline (short-circuits on the first negative or delaying outcome):
    1. importance score
    2. user preferences
    3. spam / abuse
    4. per-type frequency limits
    5. quiet hours
    6. batching eligibility
    7. allow

Every store failure resolves to the permissive branch: availability of
delivery wins over precision of filtering.

Usage:
    from notification.filtering import NotificationFilteringService

    engine = NotificationFilteringService(store, config.filtering)
    decision = engine.evaluate(intent)
    if decision.allowed and decision.batch_with_others:
        ...
"""

import logging
import math
from collections import Counter
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from core.cache.store import RateDedupStore, StoreUnavailableError
from core.clock import Clock, SystemClock
from core.config_loader import FilteringConfig
from notification.analytics import FilteringAnalytics
from notification.models import FilteringDecision, NotificationIntent, Priority
from notification.preferences import (
    NotificationPreferences,
    QuietHours,
    delay_until_quiet_hours_end,
    is_in_quiet_hours,
)
from notification.repositories import (
    BlacklistRepository,
    EngagementRepository,
    PreferenceRepository,
    SenderReputationRepository,
)

logger = logging.getLogger(__name__)

SENDER_WINDOW_SECONDS = 3600


class NotificationFilteringService:
    """Filtering engine. All collaborators are injected; none are module globals."""

    def __init__(
        self,
        store: RateDedupStore,
        config: Optional[FilteringConfig] = None,
        batch_window_seconds: int = 300,
        clock: Optional[Clock] = None,
        preferences: Optional[PreferenceRepository] = None,
        engagement: Optional[EngagementRepository] = None,
        reputation: Optional[SenderReputationRepository] = None,
        blacklist: Optional[BlacklistRepository] = None,
        analytics: Optional[FilteringAnalytics] = None
    ):
        self.store = store
        self.config = config or FilteringConfig()
        self.batch_window = timedelta(seconds=batch_window_seconds)
        self.clock = clock or SystemClock()
        self.preferences = preferences or PreferenceRepository(store)
        self.engagement = engagement or EngagementRepository(store)
        self.reputation = reputation or SenderReputationRepository(
            store,
            default=self.config.spam.default_reputation,
            ttl_seconds=self.config.spam.reputation_ttl_seconds
        )
        self.blacklist = blacklist or BlacklistRepository(store)
        self.analytics = analytics or FilteringAnalytics(store, self.clock)

    def evaluate(self, intent: NotificationIntent) -> FilteringDecision:
        """
        Run the filtering pipeline for one intent.

        Args:
            intent: The notification intent to evaluate

        Returns:
            FilteringDecision with the importance score and, when relevant,
            a reason code and suggested delay
        """
        score = self.calculate_importance(intent)
        preferences = self._load_preferences(intent.user_id)

        reason = self._check_preferences(intent, preferences)
        if reason:
            self.analytics.record('blocked', 'user_preferences', intent.user_id)
            return FilteringDecision(allowed=False, score=score, reason=reason)

        if self.is_spam(intent):
            self.analytics.record('blocked', 'spam_detected', intent.user_id)
            return FilteringDecision(allowed=False, score=score, reason='spam_detected')

        if not self.check_frequency_limit(intent.user_id, intent.notification_type):
            self.analytics.record('blocked', 'frequency_limited', intent.user_id)
            return FilteringDecision(
                allowed=False,
                score=score,
                reason='frequency_limited',
                suggested_delay=timedelta(seconds=self.config.frequency_retry_seconds)
            )

        delay = self._quiet_hours_delay(intent, preferences, score)
        if delay is not None:
            self.analytics.record('delayed', 'quiet_hours', intent.user_id)
            return FilteringDecision(
                allowed=False,
                score=score,
                reason='quiet_hours',
                suggested_delay=delay
            )

        if (score <= self.config.batch_score_threshold
                and intent.notification_type in self.config.batchable_types):
            self.analytics.record('batched', 'low_importance', intent.user_id)
            return FilteringDecision(
                allowed=True,
                score=score,
                reason='batched',
                suggested_delay=self.batch_window,
                batch_with_others=True
            )

        self.analytics.record('allowed', 'passed', intent.user_id)
        return FilteringDecision(allowed=True, score=score)

    # Importance scoring

    def calculate_importance(self, intent: NotificationIntent) -> float:
        """Importance in [0, 1]. Falls back to the default score on any error."""
        try:
            score = self.config.type_weights.get(intent.notification_type, self.config.default_score)

            history = self._engagement_history(intent.user_id)
            if history:
                if self.engagement.prefers_type(history, intent.notification_type):
                    score *= 1.2
                open_rate = self.engagement.open_rate(history)
                if open_rate is not None:
                    score += (open_rate - 0.5) * 0.2

            score *= self._metadata_multiplier(intent.notification_type, intent.metadata)

            if intent.sender_id:
                score *= self._sender_reputation(intent.sender_id)

            score *= self._recency_factor(intent)

            if not math.isfinite(score):
                raise ValueError(f"non-finite score {score}")
            return max(0.0, min(1.0, score))
        except Exception as e:
            logger.warning(f"Error calculating importance for {intent.id}: {e}")
            return self.config.default_score

    def _engagement_history(self, user_id: str) -> Dict[str, float]:
        try:
            return self.engagement.get(user_id)
        except StoreUnavailableError as e:
            logger.warning(f"Engagement history unavailable for {user_id}: {e}")
            return {}

    def _sender_reputation(self, sender_id: str) -> float:
        try:
            return self.reputation.get(sender_id)
        except StoreUnavailableError as e:
            logger.warning(f"Sender reputation unavailable for {sender_id}: {e}")
            return self.config.spam.default_reputation

    @staticmethod
    def _metadata_multiplier(notification_type: str, metadata: Dict[str, Any]) -> float:
        multiplier = 1.0
        if notification_type == 'like':
            if metadata.get('liker_is_follower'):
                multiplier *= 1.3
            if float(metadata.get('total_likes', 0) or 0) > 10:
                multiplier *= 1.1
        elif notification_type == 'comment':
            if metadata.get('is_reply'):
                multiplier *= 1.2
            if metadata.get('commenter_is_follower'):
                multiplier *= 1.4
        elif notification_type == 'mention':
            multiplier *= 1.5
        elif notification_type == 'trending':
            rank = metadata.get('rank')
            if rank is not None and float(rank) <= 5:
                multiplier *= 1.3
            if metadata.get('is_user_content'):
                multiplier *= 1.4
        return multiplier

    def _recency_factor(self, intent: NotificationIntent) -> float:
        age_hours = (self.clock.now() - intent.created_at).total_seconds() / 3600
        if age_hours > 24:
            return 0.5
        if age_hours > 6:
            return 0.8
        if age_hours > 1:
            return 0.9
        return 1.0

    # Preferences

    def _load_preferences(self, user_id: str) -> Optional[NotificationPreferences]:
        try:
            return self.preferences.get(user_id)
        except StoreUnavailableError as e:
            logger.warning(f"Preferences unavailable for {user_id}, allowing: {e}")
            return None
        except ValueError as e:
            logger.warning(f"Unreadable preferences for {user_id}, allowing: {e}")
            return None

    @staticmethod
    def _check_preferences(
        intent: NotificationIntent,
        preferences: Optional[NotificationPreferences]
    ) -> Optional[str]:
        if preferences is None:
            return None
        if not preferences.push_enabled:
            return 'push_disabled'
        if not preferences.type_enabled(intent.notification_type):
            return 'type_disabled'
        return None

    # Spam

    def is_spam(self, intent: NotificationIntent) -> bool:
        """
        Blacklisted sender, rapid-fire burst, or sender over its hourly volume.

        The rapid-fire window is kept per (sender, recipient, type) in the
        store so bursts spread across processes are still seen together.
        """
        if not intent.sender_id:
            return False

        spam = self.config.spam
        now = self.clock.timestamp()
        try:
            if self.blacklist.is_blacklisted(intent.sender_id):
                logger.info(f"Blocked notification from blacklisted sender {intent.sender_id}")
                return True

            burst_key = f"spam:burst:{intent.sender_id}:{intent.user_id}:{intent.notification_type}"
            self.store.zremrangebyscore(burst_key, '-inf', now - spam.rapid_fire_window_seconds)
            self.store.zadd(burst_key, now, intent.id)
            self.store.expire(burst_key, spam.rapid_fire_window_seconds)
            if self.store.zcard(burst_key) >= spam.rapid_fire_threshold:
                logger.info(f"Rapid-fire notifications from {intent.sender_id} to {intent.user_id}")
                return True

            sender_key = f"spam:sender:{intent.sender_id}"
            self.store.zremrangebyscore(sender_key, '-inf', now - SENDER_WINDOW_SECONDS)
            recent = self.store.zcount(sender_key, now - SENDER_WINDOW_SECONDS, now)
            if recent > spam.sender_hourly_limit:
                logger.info(f"Sender {intent.sender_id} exceeded hourly limit ({recent})")
                return True
            self.store.zadd(sender_key, now, f"{intent.id}:{intent.user_id}")
            self.store.expire(sender_key, SENDER_WINDOW_SECONDS)
            return False
        except StoreUnavailableError as e:
            logger.warning(f"Spam check unavailable, treating as not spam: {e}")
            return False

    # Frequency

    def check_frequency_limit(self, user_id: str, notification_type: str) -> bool:
        """
        Report whether one more notification fits the hourly and daily
        ceilings, counting it only when it does.
        """
        limits = (self.config.frequency_limits.get(notification_type)
                  or self.config.frequency_limits.get('system'))
        if limits is None:
            return True
        now = self.clock.now()
        hour_key = f"freq_limit:{user_id}:{notification_type}:{now.strftime('%Y-%m-%dT%H')}"
        day_key = f"freq_limit:{user_id}:{notification_type}:{now.strftime('%Y-%m-%d')}"
        try:
            return self.store.incr_within_limits([
                (hour_key, 3600, limits.hourly),
                (day_key, 86400, limits.daily),
            ])
        except StoreUnavailableError as e:
            logger.warning(f"Frequency limits unavailable for {user_id}, allowing: {e}")
            return True

    # Quiet hours

    def _quiet_hours_delay(
        self,
        intent: NotificationIntent,
        preferences: Optional[NotificationPreferences],
        score: float
    ) -> Optional[timedelta]:
        if intent.priority == Priority.HIGH or intent.override_quiet_hours:
            return None
        if score >= self.config.quiet_hours.min_importance:
            return None

        if preferences is not None:
            quiet = preferences.quiet_hours
        else:
            defaults = self.config.quiet_hours
            quiet = QuietHours(
                enabled=defaults.enabled,
                start=defaults.start,
                end=defaults.end,
                timezone=defaults.timezone
            )

        now = self.clock.now()
        if not is_in_quiet_hours(now, quiet):
            return None
        return delay_until_quiet_hours_end(now, quiet)

    # Batch summaries

    def batch_notifications(self, intents: List[NotificationIntent]) -> Dict[str, Any]:
        """Summarise a group of intents for one user into a single notification body."""
        summary, counts = summarize_batch(intents)
        scores = [self.calculate_importance(i) for i in intents]
        return {
            'count': len(intents),
            'summary': summary,
            'type_counts': counts,
            'score': sum(scores) / len(scores) if scores else 0.0,
        }


def summarize_batch(intents: List[NotificationIntent]) -> Tuple[str, Dict[str, int]]:
    """Summary text such as "You have 3 new notifications: 2 likes, 1 follow"."""
    counts = Counter(i.notification_type for i in intents)
    parts = [f"{count} {ntype}{'s' if count > 1 else ''}" for ntype, count in counts.items()]
    return f"You have {len(intents)} new notifications: {', '.join(parts)}", dict(counts)
