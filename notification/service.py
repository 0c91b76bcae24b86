#!/usr/bin/env python3
"""
Notification Service - the producer-facing entry point

Domain code (likes, comments, follows, trending jobs) hands intents to
`submit` and gets back only the admission decision; delivery happens later
through the scheduler.

Usage:
    from notification.service import NotificationService

    result = service.submit(NotificationIntent(
        user_id="u1",
        template_id="like_notification",
        notification_type="like",
        sender_id="u2",
        variables={"username": "Sam", "contentType": "post"},
    ))
    if result.skipped:
        ...
"""

import logging
from typing import Any, Dict, List, Optional

from core.clock import Clock, SystemClock
from notification.exceptions import InvalidIntentError
from notification.filtering import NotificationFilteringService
from notification.models import (
    DeliveryStatus,
    FilteringDecision,
    NotificationIntent,
    ScheduleResult,
    SubmitResult,
)
from notification.scheduler import NotificationScheduler
from notification.tracker import DeliveryTracker

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Coordinates admission of a notification intent:
    1. Validation
    2. Duplicate submission suppression (via DeliveryTracker)
    3. Filtering decision (via NotificationFilteringService)
    4. Hand-off to the NotificationScheduler
    """

    def __init__(
        self,
        filtering: NotificationFilteringService,
        scheduler: NotificationScheduler,
        tracker: DeliveryTracker,
        clock: Optional[Clock] = None
    ):
        self.filtering = filtering
        self.scheduler = scheduler
        self.tracker = tracker
        self.clock = clock or SystemClock()

    @staticmethod
    def validate(intent: NotificationIntent) -> None:
        if not intent.user_id or not intent.user_id.strip():
            raise InvalidIntentError("intent is missing user_id")
        if not intent.template_id or not intent.template_id.strip():
            raise InvalidIntentError("intent is missing template_id")
        if intent.max_retries < 0:
            raise InvalidIntentError("max_retries must not be negative")
        unknown = set(intent.channels) - {'push', 'realtime'}
        if unknown or not intent.channels:
            raise InvalidIntentError(f"unsupported channels: {sorted(unknown) or 'none'}")

    def _apply_defaults(self, intent: NotificationIntent) -> None:
        if 'max_retries' not in intent.model_fields_set:
            intent.max_retries = self.scheduler.config.default_max_retries

    def submit(self, intent: NotificationIntent) -> SubmitResult:
        """
        Admit an intent into the pipeline.

        Args:
            intent: Intent to deliver

        Returns:
            SubmitResult with the admission decision (never the delivery outcome)

        Raises:
            InvalidIntentError: If the intent is malformed
        """
        self.validate(intent)
        self._apply_defaults(intent)

        result, decision = self._admit(intent)
        if decision is None:
            return result
        return self._apply_schedule_result(result, self.scheduler.schedule(intent, decision))

    def submit_many(self, intents: List[NotificationIntent]) -> List[SubmitResult]:
        """
        Admit several intents at once.

        Each intent is filtered on its own. The allowed ones are scheduled
        together, so intents for the same user and template can go out as
        a single summary notification.

        Raises:
            InvalidIntentError: If any intent is malformed; nothing is admitted then
        """
        for intent in intents:
            self.validate(intent)
            self._apply_defaults(intent)

        results: List[SubmitResult] = []
        pending: Dict[str, SubmitResult] = {}
        admitted: List[NotificationIntent] = []
        decisions: Dict[str, FilteringDecision] = {}
        for intent in intents:
            result, decision = self._admit(intent)
            results.append(result)
            if decision is not None:
                pending[intent.id] = result
                admitted.append(intent)
                decisions[intent.id] = decision

        if admitted:
            bulk = self.scheduler.schedule_many(admitted, decisions)
            for scheduled in bulk.results:
                self._apply_schedule_result(pending[scheduled.intent_id], scheduled)
            logger.info(
                f"Bulk submit: {len(intents)} intents, {bulk.total_batched} batched, "
                f"{bulk.total_skipped} skipped by the scheduler"
            )
        return results

    def _admit(self, intent: NotificationIntent):
        """
        Dedup and filter one intent. Returns the partial result and, when the
        intent should be handed to the scheduler as allowed, its decision.
        """
        if not self.tracker.claim_submission(intent.id):
            return SubmitResult(intent_id=intent.id, skipped=True, reason='duplicate'), None

        decision = self.filtering.evaluate(intent)
        result = SubmitResult(intent_id=intent.id, reason=decision.reason, score=decision.score)
        if decision.allowed:
            return result, decision

        if decision.reason == 'quiet_hours' and decision.suggested_delay is not None:
            intent.scheduled_for = self.clock.now() + decision.suggested_delay
            scheduled = self.scheduler.schedule(intent)
            result.delayed = scheduled.status == DeliveryStatus.DELAYED
            result.skipped = not result.delayed
            result.scheduled_for = scheduled.scheduled_for
            if result.skipped:
                result.reason = scheduled.reason
            return result, None

        logger.info(f"Intent {intent.id} for {intent.user_id} not sent: {decision.reason}")
        self.tracker.record_outcome(intent.id, DeliveryStatus.FILTERED, error=decision.reason)
        result.skipped = True
        return result, None

    @staticmethod
    def _apply_schedule_result(result: SubmitResult, scheduled: ScheduleResult) -> SubmitResult:
        if scheduled.status == DeliveryStatus.BATCHED:
            result.batched = True
        elif scheduled.status in (DeliveryStatus.FILTERED, DeliveryStatus.DROPPED):
            result.skipped = True
            result.reason = scheduled.reason
        else:
            result.allowed = True
            result.batched = scheduled.batch_key is not None
            result.delayed = scheduled.status == DeliveryStatus.DELAYED
            result.scheduled_for = scheduled.scheduled_for
            if scheduled.reason:
                result.reason = scheduled.reason
        return result

    def cancel(self, intent_id: str) -> bool:
        return self.scheduler.cancel(intent_id)

    def status(self, intent_id: str) -> Optional[Dict[str, Any]]:
        return self.tracker.get_status(intent_id)
