#!/usr/bin/env python3
"""
Tests for the notification scheduler: queue ordering, delays, batching,
rate limits, retries and cancellation.
"""

from datetime import timedelta
from unittest.mock import patch

import pytest

from core.cache.store import StoreUnavailableError
from core.config_loader import SchedulerConfig
from notification.broadcaster import RealtimeBroadcaster
from notification.dispatcher import DeliveryDispatcher, PlatformBackoff
from notification.models import DeliveryStatus, FilteringDecision, NotificationIntent, Priority
from notification.preferences import NotificationPreferences
from notification.repositories import DeviceTokenRepository, PreferenceRepository
from notification.scheduler import NotificationScheduler
from notification.templates import TemplateRegistry
from notification.tracker import DeliveryTracker
from tests.mocks.fakes import FailingProvider, RecordingProvider, RecordingTransport


@pytest.fixture
def provider():
    return RecordingProvider('android')


@pytest.fixture
def tokens(store):
    repo = DeviceTokenRepository(store)
    repo.register('u1', 'token-u1-android', 'android')
    return repo


def build_scheduler(store, clock, tokens, provider, transport=None, **overrides):
    config = SchedulerConfig(**overrides)
    dispatcher = DeliveryDispatcher(
        {provider.platform: provider},
        PlatformBackoff(store, clock),
        tokens=tokens,
        send_timeout_seconds=5
    )
    broadcaster = RealtimeBroadcaster(store, transport) if transport else None
    return NotificationScheduler(
        store,
        config,
        renderer=TemplateRegistry(),
        dispatcher=dispatcher,
        tokens=tokens,
        tracker=DeliveryTracker(store),
        broadcaster=broadcaster,
        clock=clock
    )


@pytest.fixture
def scheduler(store, clock, tokens, provider):
    scheduler = build_scheduler(store, clock, tokens, provider, send_inline=False)
    yield scheduler
    scheduler.dispatcher.close()


def make_intent(clock, **kwargs) -> NotificationIntent:
    kwargs.setdefault('user_id', 'u1')
    kwargs.setdefault('template_id', 'comment_notification')
    kwargs.setdefault('notification_type', 'comment')
    kwargs.setdefault('variables', {'username': 'sam', 'contentType': 'post', 'comment': 'nice shot'})
    kwargs.setdefault('created_at', clock.now())
    return NotificationIntent(**kwargs)


class TestQueueing:

    def test_priority_queue_drains_first(self, scheduler, clock):
        first = make_intent(clock, id='normal-1')
        second = make_intent(clock, id='normal-2')
        urgent = make_intent(clock, id='urgent', priority=Priority.HIGH)
        for intent in (first, second, urgent):
            assert scheduler.schedule(intent).status == DeliveryStatus.QUEUED

        result = scheduler.drain()

        assert result.order == ['urgent', 'normal-1', 'normal-2']
        assert result.processed_priority == 1
        assert result.processed_main == 2

    def test_future_intent_waits_in_delayed_set(self, scheduler, clock, provider):
        intent = make_intent(clock, scheduled_for=clock.now() + timedelta(minutes=10))
        result = scheduler.schedule(intent)
        assert result.status == DeliveryStatus.DELAYED

        assert scheduler.drain().total == 0
        assert provider.sent == []

        clock.advance(600)
        drained = scheduler.drain()
        assert drained.processed_delayed == 1
        assert len(provider.sent) == 1

    def test_inline_send_when_due(self, store, clock, tokens, provider):
        scheduler = build_scheduler(store, clock, tokens, provider, send_inline=True)
        result = scheduler.schedule(make_intent(clock))
        assert result.status == DeliveryStatus.SENT
        assert len(provider.sent) == 1
        token, message, options = provider.sent[0]
        assert token == 'token-u1-android'
        assert message.title == 'sam commented on your post'
        assert 'nice shot' in message.body
        scheduler.dispatcher.close()

    def test_drain_skipped_while_lock_held(self, scheduler, store):
        store.acquire_lock(NotificationScheduler.DRAIN_LOCK_KEY, 'other-worker', 60)
        assert scheduler.drain().skipped is True

    def test_drain_respects_cycle_budget(self, store, clock, tokens, provider):
        scheduler = build_scheduler(store, clock, tokens, provider, send_inline=False,
                                    max_items_per_cycle=2, rate_limit_per_minute=100)
        for i in range(5):
            scheduler.schedule(make_intent(clock, id=f"n{i}"))
        assert scheduler.drain().total == 2
        assert scheduler.queue_depths()['main'] == 3
        scheduler.dispatcher.close()


class TestCancel:

    def test_cancelled_delayed_intent_is_never_sent(self, scheduler, clock, provider):
        intent = make_intent(clock, scheduled_for=clock.now() + timedelta(minutes=5))
        scheduler.schedule(intent)

        assert scheduler.cancel(intent.id) is True
        clock.advance(600)
        scheduler.drain()

        assert provider.sent == []
        assert scheduler.tracker.get_status(intent.id)['status'] == 'cancelled'

    def test_cancelled_queued_intent_is_skipped(self, scheduler, clock, provider):
        intent = make_intent(clock)
        scheduler.schedule(intent)
        scheduler.cancel(intent.id)

        assert scheduler.drain().total == 0
        assert provider.sent == []

    def test_cancel_unknown_intent(self, scheduler):
        assert scheduler.cancel('missing') is False


class TestBatching:

    def test_three_likes_become_one_send(self, scheduler, clock, provider):
        likes = [
            make_intent(clock, template_id='like_notification', notification_type='like', batchable=True)
            for _ in range(3)
        ]
        for intent in likes:
            assert scheduler.schedule(intent).status == DeliveryStatus.BATCHED

        assert scheduler.drain().flushed_batches == 0
        clock.advance(301)
        result = scheduler.drain()

        assert result.flushed_batches == 1
        assert len(provider.sent) == 1
        _, message, _ = provider.sent[0]
        assert message.title == 'You have 3 new notifications'
        assert message.data['count'] == '3'
        assert '3 likes' in message.body
        for intent in likes:
            assert scheduler.tracker.get_status(intent.id)['status'] == 'sent'

    def test_filtering_decision_can_request_batching(self, scheduler, clock):
        decision = FilteringDecision(allowed=True, score=0.3, reason='batched', batch_with_others=True)
        result = scheduler.schedule(make_intent(clock), decision)
        assert result.status == DeliveryStatus.BATCHED
        assert result.batch_key == 'notifications:batch:u1:comment_notification'

    def test_high_priority_is_never_batched(self, scheduler, clock):
        intent = make_intent(clock, priority=Priority.HIGH, batchable=True)
        assert scheduler.schedule(intent).status == DeliveryStatus.QUEUED

    def test_full_batch_flushes_immediately(self, store, clock, tokens, provider):
        scheduler = build_scheduler(store, clock, tokens, provider, send_inline=False, max_batch_size=3)
        for _ in range(3):
            scheduler.schedule(make_intent(clock, template_id='like_notification',
                                           notification_type='like', batchable=True))
        assert len(provider.sent) == 1
        assert scheduler.queue_depths()['batches'] == 0
        scheduler.dispatcher.close()

    def test_single_member_batch_sends_original(self, scheduler, clock, provider):
        scheduler.schedule(make_intent(clock, batchable=True))
        clock.advance(301)
        scheduler.drain()
        _, message, _ = provider.sent[0]
        assert message.title == 'sam commented on your post'


class TestRateLimits:

    def test_over_limit_normal_intent_is_dropped(self, store, clock, tokens, provider):
        scheduler = build_scheduler(store, clock, tokens, provider, send_inline=False, rate_limit_per_minute=2)
        statuses = [scheduler.schedule(make_intent(clock)).status for _ in range(3)]
        assert statuses == [DeliveryStatus.QUEUED, DeliveryStatus.QUEUED, DeliveryStatus.DROPPED]
        scheduler.dispatcher.close()

    def test_over_limit_critical_intent_is_delayed(self, store, clock, tokens, provider):
        scheduler = build_scheduler(store, clock, tokens, provider, send_inline=False, rate_limit_per_minute=1)
        scheduler.schedule(make_intent(clock))
        result = scheduler.schedule(make_intent(clock, notification_type='system',
                                                template_id='system_notification',
                                                variables={'message': 'hi'}))
        assert result.status == DeliveryStatus.DELAYED
        assert result.scheduled_for == clock.now().replace(second=0, microsecond=0) + timedelta(minutes=1)
        scheduler.dispatcher.close()

    def test_high_priority_bypasses_limits(self, store, clock, tokens, provider):
        scheduler = build_scheduler(store, clock, tokens, provider, send_inline=False, rate_limit_per_minute=1)
        scheduler.schedule(make_intent(clock))
        result = scheduler.schedule(make_intent(clock, priority=Priority.HIGH))
        assert result.status == DeliveryStatus.QUEUED
        scheduler.dispatcher.close()


class TestRetries:

    def test_failing_destination_dies_after_retry_budget(self, store, clock, tokens):
        failing = FailingProvider('android')
        scheduler = build_scheduler(store, clock, tokens, failing, send_inline=True)
        intent = make_intent(clock, max_retries=3)

        result = scheduler.schedule(intent)
        assert result.status == DeliveryStatus.RETRY_SCHEDULED

        for delay in (1, 2, 4):
            clock.advance(delay)
            scheduler.drain()

        assert failing.calls == 4
        record = scheduler.tracker.get_status(intent.id)
        assert record['status'] == 'dead'
        assert record['attempts'] == 4
        assert scheduler.queue_depths()['delayed'] == 0

        clock.advance(60)
        scheduler.drain()
        assert failing.calls == 4

    def test_retry_waits_for_backoff(self, store, clock, tokens):
        failing = FailingProvider('android')
        scheduler = build_scheduler(store, clock, tokens, failing, send_inline=True)
        scheduler.schedule(make_intent(clock))
        clock.advance(0.5)
        scheduler.drain()
        assert failing.calls == 1

    def test_no_destinations_counts_as_failed_attempt(self, scheduler, clock):
        intent = make_intent(clock, user_id='nobody', max_retries=0)
        scheduler.schedule(intent)
        result = scheduler.drain()
        assert result.total == 1
        record = scheduler.tracker.get_status(intent.id)
        assert record['status'] == 'dead'
        assert record['error'] == 'no_destinations'

    def test_unknown_template_is_not_retried(self, scheduler, clock):
        intent = make_intent(clock, template_id='does_not_exist')
        scheduler.schedule(intent)
        scheduler.drain()
        assert scheduler.tracker.get_status(intent.id)['status'] == 'failed_permanent'
        assert scheduler.queue_depths() == {'priority': 0, 'main': 0, 'delayed': 0, 'batches': 0}


class TestAdmission:

    def test_disabled_type_is_filtered(self, scheduler, store, clock):
        PreferenceRepository(store).save(
            NotificationPreferences(user_id='u1', notification_types={'comment': False})
        )
        result = scheduler.schedule(make_intent(clock))
        assert result.status == DeliveryStatus.FILTERED
        assert result.reason == 'type_disabled'

    def test_store_outage_drops_intent(self, scheduler, store, clock):
        store.available = False
        result = scheduler.schedule(make_intent(clock))
        assert result.status == DeliveryStatus.DROPPED
        assert result.reason == 'store_unavailable'

    def test_realtime_channel_uses_broadcaster(self, store, clock, tokens, provider):
        transport = RecordingTransport(online=['u1'])
        scheduler = build_scheduler(store, clock, tokens, provider, transport, send_inline=True)
        result = scheduler.schedule(make_intent(clock, channels=['realtime']))
        assert result.status == DeliveryStatus.SENT
        assert transport.recipients() == ['u1']
        assert provider.sent == []
        scheduler.dispatcher.close()


class TestHealth:

    def test_health_reports_depths_and_counters(self, scheduler, clock):
        scheduler.schedule(make_intent(clock))
        scheduler.schedule(make_intent(clock, scheduled_for=clock.now() + timedelta(hours=1)))

        health = scheduler.health()
        assert health['status'] == 'healthy'
        assert health['queues'] == {'priority': 0, 'main': 1, 'delayed': 1, 'batches': 0}
        assert health['store_reachable'] is True
        assert health['last_drain_at'] is None

        scheduler.drain()
        health = scheduler.health()
        assert health['counters']['sent'] == 1
        assert health['last_drain_at'] == clock.now().isoformat()
        assert health['process']['max_rss_kb'] > 0

    def test_health_degraded_when_store_down(self, scheduler, store):
        store.available = False
        health = scheduler.health()
        assert health['status'] == 'degraded'
        assert health['queues'] is None


class TestStoreErrorsDuringDrain:

    def test_failed_token_lookup_is_retried_not_lost(self, scheduler, clock, provider):
        intent = make_intent(clock)
        scheduler.schedule(intent)

        with patch.object(scheduler.tokens, 'active_tokens', side_effect=StoreUnavailableError("blip")):
            result = scheduler.drain()

        assert result.processed_main == 1
        record = scheduler.tracker.get_status(intent.id)
        assert record['status'] == 'retry_scheduled'
        assert record['error'] == 'store_unavailable'
        assert scheduler.queue_depths()['delayed'] == 1

        clock.advance(1)
        scheduler.drain()
        assert len(provider.sent) == 1
        assert scheduler.tracker.get_status(intent.id)['status'] == 'sent'

    def test_cycle_continues_after_a_failed_intent(self, scheduler, clock, provider, tokens):
        scheduler.schedule(make_intent(clock, id='first'))
        scheduler.schedule(make_intent(clock, id='second'))
        lookups = [StoreUnavailableError("blip"), tokens.active_tokens('u1')]

        with patch.object(scheduler.tokens, 'active_tokens', side_effect=lookups):
            result = scheduler.drain()

        assert result.order == ['first', 'second']
        assert len(provider.sent) == 1

    def test_unreadable_payload_goes_back_on_the_queue(self, scheduler, clock, provider):
        scheduler.schedule(make_intent(clock))

        with patch.object(scheduler, '_load', side_effect=StoreUnavailableError("blip")):
            assert scheduler.drain().total == 0

        assert scheduler.queue_depths()['main'] == 1
        assert scheduler.drain().processed_main == 1
        assert len(provider.sent) == 1

    def test_intent_that_cannot_be_rescheduled_is_logged(self, scheduler, store, clock, caplog):
        intent = make_intent(clock)
        scheduler.schedule(intent)

        with patch.object(scheduler.tokens, 'active_tokens', side_effect=StoreUnavailableError("blip")), \
                patch.object(store, 'zadd', side_effect=StoreUnavailableError("down")):
            scheduler.drain()

        assert any(intent.id in r.message and 'lost' in r.message for r in caplog.records)


class TestScheduleMany:

    def likes(self, clock, count, **kwargs):
        return [
            make_intent(clock, template_id='like_notification', notification_type='like',
                        variables={'username': 'sam', 'contentType': 'post'}, **kwargs)
            for _ in range(count)
        ]

    def test_groups_by_user_and_template(self, store, clock, tokens, provider):
        scheduler = build_scheduler(store, clock, tokens, provider, send_inline=True)
        intents = self.likes(clock, 2) + [make_intent(clock)]

        bulk = scheduler.schedule_many(intents)

        assert bulk.total_scheduled == 3
        assert bulk.total_batched == 2
        assert bulk.total_skipped == 0
        assert len(bulk.batch_ids) == 1
        assert len(provider.sent) == 2
        titles = sorted(message.title for _, message, _ in provider.sent)
        assert titles == ['You have 2 new notifications', 'sam commented on your post']
        scheduler.dispatcher.close()

    def test_high_priority_group_is_sent_individually(self, store, clock, tokens, provider):
        scheduler = build_scheduler(store, clock, tokens, provider, send_inline=True)
        intents = [make_intent(clock, priority=Priority.HIGH) for _ in range(2)]

        bulk = scheduler.schedule_many(intents)

        assert bulk.total_batched == 0
        assert bulk.batch_ids == []
        assert len(provider.sent) == 2
        scheduler.dispatcher.close()

    def test_oversized_group_is_scheduled_individually(self, store, clock, tokens, provider):
        scheduler = build_scheduler(store, clock, tokens, provider, send_inline=True, max_batch_size=2)

        bulk = scheduler.schedule_many([make_intent(clock) for _ in range(3)])

        assert bulk.total_batched == 0
        assert len(provider.sent) == 3
        scheduler.dispatcher.close()

    def test_disabled_members_are_filtered(self, scheduler, store, clock):
        PreferenceRepository(store).save(
            NotificationPreferences(user_id='u1', notification_types={'like': False})
        )

        bulk = scheduler.schedule_many(self.likes(clock, 3))

        assert bulk.total_skipped == 3
        assert {r.status for r in bulk.results} == {DeliveryStatus.FILTERED}

    def test_batch_member_status_follows_the_summary(self, scheduler, clock):
        intents = self.likes(clock, 2)

        bulk = scheduler.schedule_many(intents)
        assert {r.status for r in bulk.results} == {DeliveryStatus.QUEUED}
        assert scheduler.tracker.get_status(intents[0].id)['status'] == 'batched'

        scheduler.drain()
        assert all(scheduler.tracker.get_status(i.id)['status'] == 'sent' for i in intents)


class TestQuietHoursDelay:

    def test_future_batchable_intent_is_not_batched(self, scheduler, clock, provider):
        intent = make_intent(clock, batchable=True, scheduled_for=clock.now() + timedelta(hours=1))

        result = scheduler.schedule(intent)

        assert result.status == DeliveryStatus.DELAYED
        assert scheduler.queue_depths()['batches'] == 0
        clock.advance(301)
        scheduler.drain()
        assert provider.sent == []
