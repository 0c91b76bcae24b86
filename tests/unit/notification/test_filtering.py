#!/usr/bin/env python3
"""
Tests for the notification filtering engine.

Tests cover:
1. Importance scoring bounds and fallbacks
2. User preferences
3. Spam detection (blacklist, rapid fire, sender volume)
4. Per-type frequency limits
5. Quiet hours
6. Batching eligibility
7. Permissive behaviour when the store is down
"""

import unittest
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pytest

from core.config_loader import FilteringConfig
from notification.filtering import NotificationFilteringService, summarize_batch
from notification.models import NotificationIntent, Priority
from notification.preferences import NotificationPreferences, QuietHours
from notification.repositories import (
    BlacklistRepository,
    EngagementRepository,
    PreferenceRepository,
)
from tests.mocks.fakes import FrozenClock, InMemoryStore


def make_intent(clock, **kwargs) -> NotificationIntent:
    kwargs.setdefault('user_id', 'u1')
    kwargs.setdefault('template_id', 'like_notification')
    kwargs.setdefault('notification_type', 'like')
    kwargs.setdefault('created_at', clock.now())
    return NotificationIntent(**kwargs)


@pytest.fixture
def engine(store, clock):
    return NotificationFilteringService(store, FilteringConfig(), clock=clock)


class TestImportanceScore:

    def test_score_always_within_bounds(self, engine, clock):
        cases = [
            dict(notification_type='mention'),
            dict(notification_type='comment', metadata={'is_reply': True, 'commenter_is_follower': True}),
            dict(notification_type='like', metadata={'liker_is_follower': True, 'total_likes': 500}),
            dict(notification_type='trending', metadata={'rank': 1, 'is_user_content': True}),
            dict(notification_type='unknown_type'),
        ]
        for case in cases:
            score = engine.calculate_importance(make_intent(clock, **case))
            assert 0.0 <= score <= 1.0

    def test_mention_outranks_like(self, engine, clock):
        mention = engine.calculate_importance(make_intent(clock, notification_type='mention'))
        like = engine.calculate_importance(make_intent(clock, notification_type='like'))
        assert mention > like

    def test_old_notifications_decay(self, engine, clock):
        fresh = engine.calculate_importance(make_intent(clock, notification_type='comment'))
        stale = engine.calculate_importance(make_intent(
            clock, notification_type='comment', created_at=clock.now() - timedelta(hours=30)
        ))
        assert stale == pytest.approx(fresh * 0.5)

    def test_bad_metadata_falls_back_to_default_score(self, engine, clock):
        intent = make_intent(clock, notification_type='trending', metadata={'rank': 'not-a-number'})
        assert engine.calculate_importance(intent) == engine.config.default_score

    def test_sender_reputation_scales_score(self, engine, store, clock):
        store.set('reputation:trusted', '1.0')
        store.set('reputation:shady', '0.2')
        trusted = engine.calculate_importance(make_intent(clock, notification_type='comment', sender_id='trusted'))
        shady = engine.calculate_importance(make_intent(clock, notification_type='comment', sender_id='shady'))
        assert trusted == pytest.approx(0.7)
        assert shady == pytest.approx(0.14)

    def test_engagement_history_boosts_preferred_type(self, engine, store, clock):
        EngagementRepository(store).save('u1', {'comment': 9, 'like': 1, 'delivered': 10, 'opened': 5})
        score = engine.calculate_importance(make_intent(clock, notification_type='comment'))
        assert score == pytest.approx(0.84)


class TestPreferences:

    def test_push_disabled_blocks(self, engine, store, clock):
        PreferenceRepository(store).save(NotificationPreferences(user_id='u1', push_enabled=False))
        decision = engine.evaluate(make_intent(clock))
        assert decision.allowed is False
        assert decision.reason == 'push_disabled'

    def test_disabled_type_blocks(self, engine, store, clock):
        PreferenceRepository(store).save(
            NotificationPreferences(user_id='u1', notification_types={'like': False})
        )
        decision = engine.evaluate(make_intent(clock))
        assert decision.allowed is False
        assert decision.reason == 'type_disabled'
        assert engine.analytics.get_stats()['blocked']['user_preferences'] == 1


class TestSpam:

    def test_blacklisted_sender_is_spam(self, engine, store, clock):
        BlacklistRepository(store).add('troll')
        decision = engine.evaluate(make_intent(clock, sender_id='troll'))
        assert decision.allowed is False
        assert decision.reason == 'spam_detected'

    def test_rapid_fire_from_same_sender(self, engine, clock):
        results = [engine.is_spam(make_intent(clock, sender_id='s1')) for _ in range(5)]
        assert results == [False, False, False, False, True]

    def test_rapid_fire_window_slides(self, engine, clock):
        for _ in range(4):
            assert not engine.is_spam(make_intent(clock, sender_id='s1'))
        clock.advance(31)
        assert not engine.is_spam(make_intent(clock, sender_id='s1'))

    def test_sender_hourly_volume(self, engine, clock):
        results = [
            engine.is_spam(make_intent(clock, user_id=f"u{i}", sender_id='bulk'))
            for i in range(12)
        ]
        assert results[:11] == [False] * 11
        assert results[11] is True

    def test_intent_without_sender_is_never_spam(self, engine, clock):
        assert not any(engine.is_spam(make_intent(clock)) for _ in range(20))


class TestFrequencyLimits:

    def test_likes_over_hourly_ceiling_are_limited(self, engine, clock):
        decisions = [
            engine.evaluate(make_intent(clock, sender_id=f"sender{i}"))
            for i in range(25)
        ]
        limited = [d for d in decisions if d.reason == 'frequency_limited']
        assert len(limited) >= 5
        assert all(not d.allowed for d in limited)
        assert all(d.suggested_delay == timedelta(hours=1) for d in limited)

    def test_limits_are_per_type(self, engine):
        for _ in range(3):
            assert engine.check_frequency_limit('u1', 'system')
        assert not engine.check_frequency_limit('u1', 'system')
        assert engine.check_frequency_limit('u1', 'comment')

    def test_rejected_attempts_do_not_use_up_the_daily_budget(self, engine, clock):
        results = [engine.check_frequency_limit('u1', 'like') for _ in range(100)]
        assert results.count(True) == 20

        clock.advance(3600)

        assert engine.check_frequency_limit('u1', 'like') is True

    def test_daily_ceiling_holds_across_hours(self, engine, clock):
        # like: 20 per hour, 100 per day
        allowed = 0
        for _ in range(6):
            allowed += sum(engine.check_frequency_limit('u1', 'like') for _ in range(30))
            clock.advance(3600)
        assert allowed == 100

    def test_unknown_type_uses_system_limits(self, engine):
        results = [engine.check_frequency_limit('u1', 'made_up') for _ in range(4)]
        assert results == [True, True, True, False]


class TestQuietHours:

    @pytest.fixture
    def night_clock(self):
        return FrozenClock(datetime(2026, 3, 10, 23, 0, tzinfo=timezone.utc))

    @pytest.fixture
    def night_engine(self, store, night_clock):
        config = FilteringConfig()
        config.type_weights['like'] = 0.3
        PreferenceRepository(store).save(NotificationPreferences(
            user_id='u1',
            quiet_hours=QuietHours(enabled=True, start='22:00', end='08:00', timezone='UTC')
        ))
        return NotificationFilteringService(store, config, clock=night_clock)

    def test_low_importance_delayed_until_window_ends(self, night_engine, night_clock):
        decision = night_engine.evaluate(make_intent(night_clock))
        assert decision.score == pytest.approx(0.3)
        assert decision.allowed is False
        assert decision.reason == 'quiet_hours'
        release = night_clock.now() + decision.suggested_delay
        assert release >= datetime(2026, 3, 11, 8, 0, tzinfo=timezone.utc)

    def test_high_priority_ignores_quiet_hours(self, night_engine, night_clock):
        decision = night_engine.evaluate(make_intent(night_clock, priority=Priority.HIGH))
        assert decision.reason != 'quiet_hours'

    def test_override_flag_ignores_quiet_hours(self, night_engine, night_clock):
        decision = night_engine.evaluate(make_intent(night_clock, override_quiet_hours=True))
        assert decision.reason != 'quiet_hours'

    def test_important_notifications_pass(self, night_engine, night_clock):
        decision = night_engine.evaluate(make_intent(
            night_clock, notification_type='mention', template_id='mention_notification'
        ))
        assert decision.allowed is True

    def test_local_timezone_is_respected(self, store):
        try:
            ZoneInfo("Asia/Tokyo")
        except ZoneInfoNotFoundError:
            pytest.skip("tz database not installed")
        # 23:00 UTC is 08:00 in Tokyo, already past the window
        clock = FrozenClock(datetime(2026, 3, 10, 23, 0, tzinfo=timezone.utc))
        PreferenceRepository(store).save(NotificationPreferences(
            user_id='u1',
            quiet_hours=QuietHours(start='22:00', end='08:00', timezone='Asia/Tokyo')
        ))
        engine = NotificationFilteringService(store, FilteringConfig(), clock=clock)
        decision = engine.evaluate(make_intent(clock, notification_type="system", template_id="system_notification"))
        assert decision.allowed is True


class TestBatching:

    def test_low_importance_like_is_batched(self, engine, clock):
        decision = engine.evaluate(make_intent(clock, sender_id='s1'))
        assert decision.allowed is True
        assert decision.batch_with_others is True
        assert decision.reason == 'batched'
        assert decision.suggested_delay == timedelta(seconds=300)

    def test_comment_is_sent_directly(self, engine, clock):
        decision = engine.evaluate(make_intent(clock, notification_type='comment', template_id='comment_notification'))
        assert decision.allowed is True
        assert decision.batch_with_others is False
        assert decision.reason is None

    def test_summary_text(self, clock):
        intents = [
            make_intent(clock, notification_type='like'),
            make_intent(clock, notification_type='like'),
            make_intent(clock, notification_type='follow'),
        ]
        summary, counts = summarize_batch(intents)
        assert summary == "You have 3 new notifications: 2 likes, 1 follow"
        assert counts == {'like': 2, 'follow': 1}

    def test_batch_notifications_summary(self, engine, clock):
        result = engine.batch_notifications([make_intent(clock), make_intent(clock)])
        assert result['count'] == 2
        assert 0.0 <= result['score'] <= 1.0


class TestStoreOutage(unittest.TestCase):
    """Every check resolves to its permissive default when the store is down."""

    def setUp(self):
        self.store = InMemoryStore()
        self.clock = FrozenClock()
        self.engine = NotificationFilteringService(self.store, FilteringConfig(), clock=self.clock)
        self.store.available = False

    def test_evaluate_allows(self):
        decision = self.engine.evaluate(make_intent(
            self.clock, notification_type='comment', template_id='comment_notification', sender_id='s1'
        ))
        self.assertTrue(decision.allowed)

    def test_not_spam_and_not_limited(self):
        self.assertFalse(self.engine.is_spam(make_intent(self.clock, sender_id='s1')))
        self.assertTrue(self.engine.check_frequency_limit('u1', 'like'))

    def test_stats_report_unavailable(self):
        self.assertFalse(self.engine.analytics.get_stats()['available'])
