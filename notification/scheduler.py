#!/usr/bin/env python3
"""
Notification Scheduler - queues, batching, rate limiting and retries

Owns three logical queues in the shared store plus per-(user, template)
batch buffers:

    notifications:priority_queue   list of intent ids, high priority
    notifications:queue            list of intent ids, everything else
    notifications:delayed          sorted set, score = due time (epoch seconds)
    notifications:batch:{u}:{t}    list of intent ids in arrival order
    notifications:batches          sorted set of open batch keys, score = window start

Intent payloads live at notifications:intent:{id}. Cancelling an intent
deletes that key; a drain that pops an id with no payload skips it.

Any process may drain. Ids are taken with pop semantics (RPOP, LPOP, and
ZREM returning 1) so each intent is dequeued exactly once, and a store lock
keeps drain cycles from overlapping.

Usage:
    scheduler = NotificationScheduler(store, config.scheduler, renderer, dispatcher, tokens)
    scheduler.schedule(intent)
    scheduler.drain()        # or scheduler.start() for the background loop
"""

import logging
import resource
import threading
import time
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from core.cache.store import RateDedupStore, StoreUnavailableError
from core.clock import Clock, SystemClock
from core.config_loader import SchedulerConfig
from notification.broadcaster import RealtimeBroadcaster
from notification.dispatcher import DeliveryDispatcher
from notification.exceptions import TemplateNotFoundError
from notification.filtering import summarize_batch
from notification.interfaces import TemplateRenderer
from notification.models import (
    BulkScheduleResult,
    DeliveryStatus,
    DispatchReport,
    DrainResult,
    FilteringDecision,
    NotificationIntent,
    Priority,
    ProcessResult,
    RenderedMessage,
    ScheduleResult,
)
from notification.repositories import DeviceTokenRepository, PreferenceRepository
from notification.retry import attempts_exhausted, next_delay
from notification.tracker import DeliveryTracker

logger = logging.getLogger(__name__)

BATCH_TEMPLATE_ID = "batched_notification"

SKIPPED_STATUSES = (DeliveryStatus.FILTERED, DeliveryStatus.DROPPED)


class NotificationScheduler:
    """
    Schedules, batches, rate limits and delivers notification intents.

    State machine per intent:
        Created -> Filtered-out | Enqueued-Immediate | Enqueued-Delayed | Batched
        Enqueued-Immediate -> Sent | Failed -> Retry-Scheduled -> Enqueued-Delayed
        ... until attempts exceed max_retries + 1, then Dead
    """

    QUEUE_KEY = "notifications:queue"
    PRIORITY_QUEUE_KEY = "notifications:priority_queue"
    DELAYED_KEY = "notifications:delayed"
    BATCH_INDEX_KEY = "notifications:batches"
    BATCH_KEY = "notifications:batch:{user_id}:{template_id}"
    INTENT_KEY = "notifications:intent:{intent_id}"
    DRAIN_LOCK_KEY = "notifications:drain_lock"

    def __init__(
        self,
        store: RateDedupStore,
        config: Optional[SchedulerConfig] = None,
        renderer: Optional[TemplateRenderer] = None,
        dispatcher: Optional[DeliveryDispatcher] = None,
        tokens: Optional[DeviceTokenRepository] = None,
        preferences: Optional[PreferenceRepository] = None,
        tracker: Optional[DeliveryTracker] = None,
        broadcaster: Optional[RealtimeBroadcaster] = None,
        clock: Optional[Clock] = None
    ):
        self.store = store
        self.config = config or SchedulerConfig()
        self.renderer = renderer
        self.dispatcher = dispatcher
        self.tokens = tokens or DeviceTokenRepository(store)
        self.preferences = preferences or PreferenceRepository(store)
        self.tracker = tracker or DeliveryTracker(store)
        self.broadcaster = broadcaster
        self.clock = clock or SystemClock()

        self._counters = {
            'scheduled': 0,
            'processed': 0,
            'sent': 0,
            'failed': 0,
            'retried': 0,
            'dead': 0,
            'dropped': 0,
            'rate_limited': 0,
            'cancelled': 0,
            'batches_flushed': 0,
            'errors': 0,
        }
        self._counters_lock = threading.Lock()
        self.last_drain_at: Optional[datetime] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _count(self, name: str, amount: int = 1) -> None:
        with self._counters_lock:
            self._counters[name] += amount

    # Payload storage

    def _save(self, intent: NotificationIntent) -> None:
        self.store.set(
            self.INTENT_KEY.format(intent_id=intent.id),
            intent.to_json(),
            ttl=self.config.intent_ttl_seconds
        )

    def _load(self, intent_id: str) -> Optional[NotificationIntent]:
        raw = self.store.get(self.INTENT_KEY.format(intent_id=intent_id))
        if raw is None:
            return None
        return NotificationIntent.from_json(raw)

    def _discard(self, *intent_ids: str) -> None:
        keys = [self.INTENT_KEY.format(intent_id=i) for i in intent_ids]
        try:
            self.store.delete(*keys)
        except StoreUnavailableError as e:
            logger.warning(f"Could not delete payloads {intent_ids}: {e}")

    # Scheduling

    def schedule(
        self,
        intent: NotificationIntent,
        decision: Optional[FilteringDecision] = None
    ) -> ScheduleResult:
        """
        Admit an intent: check type preference and rate limits, then send it
        now, park it in the delayed set, or add it to its batch buffer.

        Args:
            intent: Intent to schedule
            decision: Filtering decision, when the intent came through the filter

        Returns:
            ScheduleResult describing where the intent went
        """
        try:
            if not self._type_enabled(intent):
                self.tracker.record_outcome(intent.id, DeliveryStatus.FILTERED, error='type_disabled')
                return ScheduleResult(intent.id, DeliveryStatus.FILTERED, reason='type_disabled')

            if not self._within_rate_limit(intent):
                return self._handle_rate_limited(intent)

            self._count('scheduled')
            now = self.clock.now()
            if self._should_batch(intent, decision, now):
                return self._add_to_batch(intent)

            if not intent.is_due(now):
                return self._enqueue_delayed(intent, intent.scheduled_for, reason='future_scheduled')

            if self.config.send_inline:
                result = self.process(intent)
                return ScheduleResult(intent.id, result.status, reason=result.error)
            return self.enqueue(intent)
        except StoreUnavailableError as e:
            self._count('errors')
            logger.error(f"Store unavailable while scheduling {intent.id}, dropping: {e}")
            return ScheduleResult(intent.id, DeliveryStatus.DROPPED, reason='store_unavailable')

    def schedule_many(
        self,
        intents: List[NotificationIntent],
        decisions: Optional[Dict[str, FilteringDecision]] = None
    ) -> BulkScheduleResult:
        """
        Schedule several intents at once.

        Intents are grouped by (user, template). A group of 2 to max_batch_size
        due, non-high intents is sent as one summary notification right away;
        everything else goes through `schedule` one by one.

        Args:
            intents: Intents to schedule
            decisions: Filtering decisions keyed by intent id, where available

        Returns:
            BulkScheduleResult with one ScheduleResult per intent, in group order
        """
        decisions = decisions or {}
        groups: Dict[Tuple[str, str], List[NotificationIntent]] = {}
        for intent in intents:
            groups.setdefault((intent.user_id, intent.template_id), []).append(intent)

        bulk = BulkScheduleResult(total_scheduled=len(intents))
        now = self.clock.now()
        for members in groups.values():
            if self._can_batch_group(members, now):
                results, batch_id = self._schedule_group(members, decisions)
                if batch_id:
                    bulk.batch_ids.append(batch_id)
                    bulk.total_batched += sum(1 for r in results if r.batch_key == batch_id)
            else:
                results = [self.schedule(m, decisions.get(m.id)) for m in members]
            bulk.results.extend(results)
            bulk.total_skipped += sum(1 for r in results if r.status in SKIPPED_STATUSES)
        return bulk

    def _can_batch_group(self, members: List[NotificationIntent], now: datetime) -> bool:
        return (
            1 < len(members) <= self.config.max_batch_size
            and all(m.priority != Priority.HIGH for m in members)
            and all(m.template_id != BATCH_TEMPLATE_ID for m in members)
            and all(m.is_due(now) for m in members)
        )

    def _schedule_group(
        self,
        members: List[NotificationIntent],
        decisions: Dict[str, FilteringDecision]
    ) -> Tuple[List[ScheduleResult], Optional[str]]:
        results: List[ScheduleResult] = []
        enabled: List[NotificationIntent] = []
        for member in members:
            if self._type_enabled(member):
                enabled.append(member)
            else:
                self.tracker.record_outcome(member.id, DeliveryStatus.FILTERED, error='type_disabled')
                results.append(ScheduleResult(member.id, DeliveryStatus.FILTERED, reason='type_disabled'))

        if len(enabled) < 2:
            return results + [self.schedule(m, decisions.get(m.id)) for m in enabled], None

        batch = self.create_batched_notification(enabled)
        for member in enabled:
            self.tracker.record_outcome(member.id, DeliveryStatus.BATCHED, metadata={'batch_id': batch.id})
        scheduled = self.schedule(batch)
        if scheduled.status in SKIPPED_STATUSES:
            for member in enabled:
                self.tracker.record_outcome(member.id, scheduled.status, error=scheduled.reason,
                                            metadata={'batch_id': batch.id})
        logger.info(f"Scheduled {len(enabled)} intents for {batch.user_id} as batch {batch.id}")
        return results + [
            ScheduleResult(m.id, scheduled.status, reason=scheduled.reason,
                           scheduled_for=scheduled.scheduled_for, batch_key=batch.id)
            for m in enabled
        ], batch.id

    def _type_enabled(self, intent: NotificationIntent) -> bool:
        try:
            preferences = self.preferences.get(intent.user_id)
        except (StoreUnavailableError, ValueError) as e:
            logger.warning(f"Preference check failed for {intent.user_id}, allowing: {e}")
            return True
        if preferences is None:
            return True
        return preferences.type_enabled(intent.notification_type)

    def _within_rate_limit(self, intent: NotificationIntent) -> bool:
        """Minute/hour/day counters per user. Only admitted intents are counted."""
        if intent.priority == Priority.HIGH and self.config.high_priority_bypass:
            return True

        now = self.clock.timestamp()
        windows = (
            ('minute', 60, self.config.rate_limit_per_minute),
            ('hour', 3600, self.config.rate_limit_per_hour),
            ('day', 86400, self.config.rate_limit_per_day),
        )
        counters = [
            (f"rate_limit:{intent.user_id}:{name}:{int(now // width)}", width, ceiling)
            for name, width, ceiling in windows
        ]
        try:
            if not self.store.incr_within_limits(counters):
                logger.info(f"User {intent.user_id} over rate limit, intent {intent.id}")
                return False
        except StoreUnavailableError as e:
            logger.warning(f"Rate limit store unavailable, allowing {intent.id}: {e}")
        return True

    def _handle_rate_limited(self, intent: NotificationIntent) -> ScheduleResult:
        self._count('rate_limited')
        if intent.notification_type in self.config.critical_types:
            now = self.clock.now()
            next_minute = now.replace(second=0, microsecond=0) + timedelta(minutes=1)
            return self._enqueue_delayed(intent, next_minute, reason='rate_limited')

        self._count('dropped')
        self.tracker.record_outcome(intent.id, DeliveryStatus.DROPPED, error='rate_limited')
        return ScheduleResult(intent.id, DeliveryStatus.DROPPED, reason='rate_limited')

    def _should_batch(
        self,
        intent: NotificationIntent,
        decision: Optional[FilteringDecision],
        now: datetime
    ) -> bool:
        if intent.priority == Priority.HIGH or intent.template_id == BATCH_TEMPLATE_ID:
            return False
        # A future send time (quiet hours, explicit scheduling) must not be cut short by a batch window
        if not intent.is_due(now):
            return False
        return intent.batchable or bool(decision and decision.batch_with_others)

    def enqueue(self, intent: NotificationIntent) -> ScheduleResult:
        """Store the payload and push the id onto the priority or main queue."""
        self._save(intent)
        queue = self.PRIORITY_QUEUE_KEY if intent.priority == Priority.HIGH else self.QUEUE_KEY
        self.store.lpush(queue, intent.id)
        self.tracker.record_outcome(intent.id, DeliveryStatus.QUEUED, attempts=intent.retry_count)
        return ScheduleResult(intent.id, DeliveryStatus.QUEUED)

    def _enqueue_delayed(self, intent: NotificationIntent, due: datetime, reason: str) -> ScheduleResult:
        intent.scheduled_for = due
        self._save(intent)
        self.store.zadd(self.DELAYED_KEY, due.timestamp(), intent.id)
        self.tracker.record_outcome(intent.id, DeliveryStatus.DELAYED, attempts=intent.retry_count, error=reason)
        logger.debug(f"Intent {intent.id} delayed until {due.isoformat()} ({reason})")
        return ScheduleResult(intent.id, DeliveryStatus.DELAYED, reason=reason, scheduled_for=due)

    def cancel(self, intent_id: str) -> bool:
        """Remove a not-yet-sent intent. Returns False if it was unknown or already gone."""
        deleted = self.store.delete(self.INTENT_KEY.format(intent_id=intent_id))
        self.store.zrem(self.DELAYED_KEY, intent_id)
        if deleted:
            self._count('cancelled')
            self.tracker.record_outcome(intent_id, DeliveryStatus.CANCELLED)
            logger.info(f"Cancelled intent {intent_id}")
        return bool(deleted)

    # Batching

    def _add_to_batch(self, intent: NotificationIntent) -> ScheduleResult:
        key = self.BATCH_KEY.format(user_id=intent.user_id, template_id=intent.template_id)
        self._save(intent)
        # Buffers outlive their window so a slow drain never loses members
        length = self.store.rpush_with_expiry(key, intent.id, self.config.batch_window_seconds * 4)
        self.store.zadd(self.BATCH_INDEX_KEY, self.clock.timestamp(), key, nx=True)
        self.tracker.record_outcome(intent.id, DeliveryStatus.BATCHED, metadata={'batch_key': key})

        if length >= self.config.max_batch_size and self.store.zrem(self.BATCH_INDEX_KEY, key) == 1:
            logger.info(f"Batch {key} reached {length} members, flushing")
            self._flush_batch(key)
        return ScheduleResult(intent.id, DeliveryStatus.BATCHED, batch_key=key)

    def flush_due_batches(self) -> int:
        """Flush every batch whose window has elapsed. Returns the number flushed."""
        cutoff = self.clock.timestamp() - self.config.batch_window_seconds
        flushed = 0
        for key in self.store.range_by_score(self.BATCH_INDEX_KEY, '-inf', cutoff):
            # Whoever removes the index entry owns the flush
            if self.store.zrem(self.BATCH_INDEX_KEY, key) == 1 and self._flush_batch(key):
                flushed += 1
        return flushed

    def _flush_batch(self, key: str) -> bool:
        members: List[NotificationIntent] = []
        while len(members) < self.config.max_batch_size:
            intent_id = self.store.lpop(key)
            if intent_id is None:
                break
            intent = self._load(intent_id)
            if intent is not None:
                members.append(intent)

        if self.store.llen(key) > 0:
            self.store.zadd(self.BATCH_INDEX_KEY, self.clock.timestamp(), key, nx=True)

        if not members:
            return False

        self._count('batches_flushed')
        if len(members) == 1:
            self.process(members[0])
        else:
            self.process(self.create_batched_notification(members))
        return True

    def create_batched_notification(self, members: List[NotificationIntent]) -> NotificationIntent:
        """Synthesize one summary intent standing for all members of a batch."""
        first = members[0]
        summary, type_counts = summarize_batch(members)
        return NotificationIntent(
            id=f"batch_{uuid.uuid4().hex}",
            user_id=first.user_id,
            template_id=BATCH_TEMPLATE_ID,
            variables={
                'count': len(members),
                'summary': summary,
                'type_counts': type_counts,
                'notifications': [m.variables for m in members],
            },
            priority=Priority.NORMAL,
            notification_type='batch',
            max_retries=max(m.max_retries for m in members),
            locale=first.locale,
            channels=first.channels,
            batch_member_ids=[m.id for m in members],
            metadata={'original_template_id': first.template_id},
        )

    # Delivery

    def process(self, intent: NotificationIntent) -> ProcessResult:
        """
        Make one delivery attempt.

        Resolves destinations, renders the template and dispatches. On
        failure the intent is rescheduled with backoff or, once the retry
        budget is spent, marked dead. A store failure during the attempt
        counts as a failed attempt.
        """
        attempts = intent.retry_count + 1
        self._count('processed')

        if attempts > intent.max_retries + 1:
            return self._mark_dead(intent, intent.retry_count, 'retry budget already spent')

        try:
            return self._attempt(intent, attempts)
        except StoreUnavailableError as e:
            self._count('errors')
            self._count('failed')
            logger.warning(f"Store failed while delivering {intent.id} (attempt {attempts}): {e}")
            return self._recover_from_store_error(intent, attempts)

    def _recover_from_store_error(self, intent: NotificationIntent, attempts: int) -> ProcessResult:
        try:
            if attempts_exhausted(attempts, intent.max_retries):
                return self._mark_dead(intent, attempts, 'store_unavailable')
            return self._schedule_retry(intent, attempts, 'store_unavailable', DispatchReport())
        except StoreUnavailableError as e:
            logger.error(
                f"Intent {intent.id} for user {intent.user_id} could not be rescheduled "
                f"after attempt {attempts} and is lost: {e}"
            )
            return ProcessResult(intent.id, DeliveryStatus.DROPPED, attempts, error='store_unavailable')

    def _attempt(self, intent: NotificationIntent, attempts: int) -> ProcessResult:
        try:
            message = self._render(intent)
        except TemplateNotFoundError as e:
            logger.error(f"{e} (intent {intent.id}), dropping without retry")
            self._count('failed')
            self._discard(intent.id, *intent.batch_member_ids)
            self._record_all(intent, DeliveryStatus.FAILED_PERMANENT, attempts, 'unknown_template')
            return ProcessResult(intent.id, DeliveryStatus.FAILED_PERMANENT, attempts, error='unknown_template')

        options = {'intent_id': intent.id, 'priority': intent.priority.value}
        report = DispatchReport()
        success = True
        error = None

        if 'push' in intent.channels:
            destinations = self.tokens.active_tokens(intent.user_id)
            if destinations:
                report = self.dispatcher.dispatch(intent.user_id, destinations, message, options)
                success = report.success
                if not success:
                    error = '; '.join(r.error or 'failed' for r in report.results)
            else:
                success = False
                error = 'no_destinations'

        if 'realtime' in intent.channels and self.broadcaster is not None:
            self.broadcaster.broadcast(
                f"intent:{intent.id}",
                [intent.user_id],
                {'id': intent.id, 'title': message.title, 'body': message.body, 'data': message.data}
            )

        if success:
            self._count('sent')
            self._discard(intent.id, *intent.batch_member_ids)
            self._record_all(intent, DeliveryStatus.SENT, attempts)
            if report.failed:
                logger.info(f"Intent {intent.id} sent to {report.delivered}/{len(report.results)} destinations")
            return ProcessResult(intent.id, DeliveryStatus.SENT, attempts, report.delivered, report.failed)

        self._count('failed')
        if attempts_exhausted(attempts, intent.max_retries):
            return self._mark_dead(intent, attempts, error)
        return self._schedule_retry(intent, attempts, error, report)

    def _render(self, intent: NotificationIntent) -> RenderedMessage:
        message = self.renderer.render(intent.template_id, intent.variables, self._locale(intent))
        if message is None:
            raise TemplateNotFoundError(intent.template_id)
        return message

    def _locale(self, intent: NotificationIntent) -> Optional[str]:
        if intent.locale:
            return intent.locale
        try:
            preferences = self.preferences.get(intent.user_id)
        except (StoreUnavailableError, ValueError):
            return None
        return preferences.locale if preferences else None

    def _schedule_retry(
        self,
        intent: NotificationIntent,
        attempts: int,
        error: Optional[str],
        report: DispatchReport
    ) -> ProcessResult:
        delay = next_delay(intent.retry_count, self.config.retry_delays_seconds)
        intent.retry_count += 1
        due = self.clock.now() + delay
        intent.scheduled_for = due
        self._save(intent)
        self.store.zadd(self.DELAYED_KEY, due.timestamp(), intent.id)
        self._count('retried')
        self.tracker.record_outcome(intent.id, DeliveryStatus.RETRY_SCHEDULED, attempts, error)
        logger.warning(
            f"Delivery of {intent.id} failed (attempt {attempts}/{intent.max_retries + 1}): "
            f"{error}. Retrying in {delay.total_seconds():.0f}s"
        )
        return ProcessResult(intent.id, DeliveryStatus.RETRY_SCHEDULED, attempts,
                             report.delivered, report.failed, error)

    def _mark_dead(self, intent: NotificationIntent, attempts: int, error: Optional[str]) -> ProcessResult:
        self._count('dead')
        self._discard(intent.id, *intent.batch_member_ids)
        self._record_all(intent, DeliveryStatus.DEAD, attempts, error)
        logger.error(
            f"Intent {intent.id} for user {intent.user_id} permanently failed after "
            f"{attempts} attempts: {error}"
        )
        return ProcessResult(intent.id, DeliveryStatus.DEAD, attempts, error=error)

    def _record_all(
        self,
        intent: NotificationIntent,
        status: DeliveryStatus,
        attempts: int,
        error: Optional[str] = None
    ) -> None:
        self.tracker.record_outcome(intent.id, status, attempts, error,
                                    metadata={'user_id': intent.user_id, 'template_id': intent.template_id})
        for member_id in intent.batch_member_ids:
            self.tracker.record_outcome(member_id, status, attempts, error, metadata={'batch_id': intent.id})

    # Drain

    def drain(self) -> DrainResult:
        """
        Run one drain cycle: the whole priority queue, then the main queue,
        then delayed entries that are due, then batches whose window elapsed.

        Skipped when another process holds the drain lock.
        """
        result = DrainResult()
        token = uuid.uuid4().hex
        try:
            if not self.store.acquire_lock(self.DRAIN_LOCK_KEY, token, self.config.drain_lock_ttl_seconds):
                logger.debug("Drain already running elsewhere, skipping cycle")
                result.skipped = True
                return result
        except StoreUnavailableError as e:
            logger.warning(f"Store unavailable, skipping drain cycle: {e}")
            result.skipped = True
            return result

        budget = self.config.max_items_per_cycle
        try:
            result.processed_priority = self._drain_queue(self.PRIORITY_QUEUE_KEY, result, budget)
            budget -= result.processed_priority
            result.processed_main = self._drain_queue(self.QUEUE_KEY, result, budget)
            budget -= result.processed_main
            result.processed_delayed = self._drain_delayed(result, budget)
            result.flushed_batches = self.flush_due_batches()
        except StoreUnavailableError as e:
            self._count('errors')
            logger.warning(f"Store failed mid-drain after {result.total} intents: {e}")
        finally:
            self.last_drain_at = self.clock.now()
            try:
                self.store.release_lock(self.DRAIN_LOCK_KEY, token)
            except StoreUnavailableError as e:
                logger.warning(f"Could not release drain lock: {e}")

        if result.total or result.flushed_batches:
            logger.info(
                f"Drain: {result.processed_priority} priority, {result.processed_main} main, "
                f"{result.processed_delayed} delayed, {result.flushed_batches} batches"
            )
        return result

    def _drain_queue(self, queue_key: str, result: DrainResult, budget: int) -> int:
        processed = 0
        while processed < budget:
            intent_id = self.store.rpop(queue_key)
            if intent_id is None:
                break
            try:
                intent = self._load(intent_id)
            except StoreUnavailableError:
                self._put_back(intent_id, lambda: self.store.lpush(queue_key, intent_id))
                raise
            if intent is None:
                logger.debug(f"Intent {intent_id} was cancelled, skipping")
                continue
            self.process(intent)
            result.order.append(intent_id)
            processed += 1
        return processed

    def _drain_delayed(self, result: DrainResult, budget: int) -> int:
        if budget <= 0:
            return 0
        now = self.clock.timestamp()
        processed = 0
        for intent_id in self.store.range_by_score(self.DELAYED_KEY, '-inf', now, limit=budget):
            # Another drainer may have taken it between the range read and here
            if self.store.zrem(self.DELAYED_KEY, intent_id) != 1:
                continue
            try:
                intent = self._load(intent_id)
            except StoreUnavailableError:
                self._put_back(intent_id, lambda: self.store.zadd(self.DELAYED_KEY, now, intent_id))
                raise
            if intent is None:
                continue
            self.process(intent)
            result.order.append(intent_id)
            processed += 1
        return processed

    def _put_back(self, intent_id: str, restore) -> None:
        """Return an id taken off a queue whose payload could not be read."""
        try:
            restore()
            logger.warning(f"Returned {intent_id} to the queue after a store error")
        except StoreUnavailableError as e:
            logger.error(f"Intent {intent_id} was dequeued but could not be returned and is lost: {e}")

    # Background loop

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="notification-drain", daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started (drain every {self.config.drain_interval_seconds}s)")

    def stop(self, timeout: float = 10.0) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.drain()
            except Exception as e:
                self._count('errors')
                logger.exception(f"Drain cycle failed: {e}")
            self._stop_event.wait(self.config.drain_interval_seconds)

    # Health

    def queue_depths(self) -> Dict[str, int]:
        return {
            'priority': self.store.llen(self.PRIORITY_QUEUE_KEY),
            'main': self.store.llen(self.QUEUE_KEY),
            'delayed': self.store.zcard(self.DELAYED_KEY),
            'batches': self.store.zcard(self.BATCH_INDEX_KEY),
        }

    def health(self) -> Dict[str, Any]:
        """Queue depths, counters, last drain time, store reachability and process metrics."""
        store_reachable = self.store.ping()
        try:
            depths: Optional[Dict[str, int]] = self.queue_depths()
        except StoreUnavailableError as e:
            logger.warning(f"Could not read queue depths: {e}")
            depths = None

        with self._counters_lock:
            counters = dict(self._counters)

        usage = resource.getrusage(resource.RUSAGE_SELF)
        return {
            'status': 'healthy' if store_reachable else 'degraded',
            'queues': depths,
            'counters': counters,
            'last_drain_at': self.last_drain_at.isoformat() if self.last_drain_at else None,
            'running': self.running,
            'store_reachable': store_reachable,
            'process': {
                'max_rss_kb': usage.ru_maxrss,
                'cpu_user_seconds': round(usage.ru_utime, 3),
                'cpu_system_seconds': round(usage.ru_stime, 3),
                'process_time': round(time.process_time(), 3),
            },
        }
