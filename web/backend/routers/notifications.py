#!/usr/bin/env python3
"""
Notification endpoints - submit, cancel, inspect and drain notifications.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from notification.analytics import FilteringAnalytics
from notification.exceptions import InvalidIntentError
from notification.scheduler import NotificationScheduler
from notification.service import NotificationService

from ..dependencies import get_analytics, get_notification_service, get_scheduler
from ..exceptions import InvalidRequestException, NotFoundException
from ..models.requests import BulkNotificationRequest, NotificationRequest
from ..models.responses import (
    BulkSubmitResponse,
    CancelResponse,
    DrainResponse,
    FilteringStatsResponse,
    QueueStatusResponse,
    StatusResponse,
    SubmitResponse,
)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.post("", response_model=SubmitResponse)
def submit_notification(
    request: NotificationRequest,
    notification_service: NotificationService = Depends(get_notification_service)
):
    """
    Submit a notification intent.

    Returns only the admission decision; delivery happens asynchronously.
    """
    try:
        result = notification_service.submit(request.to_intent())
    except InvalidIntentError as e:
        raise InvalidRequestException(str(e))
    return SubmitResponse(**result.to_dict())


@router.post("/bulk", response_model=BulkSubmitResponse)
def submit_notifications(
    request: BulkNotificationRequest,
    notification_service: NotificationService = Depends(get_notification_service)
):
    """
    Submit several intents at once. Intents for the same user and template
    may be delivered as one summary notification.
    """
    try:
        results = notification_service.submit_many([n.to_intent() for n in request.notifications])
    except InvalidIntentError as e:
        raise InvalidRequestException(str(e))
    return BulkSubmitResponse(
        total=len(results),
        batched=sum(1 for r in results if r.batched),
        skipped=sum(1 for r in results if r.skipped),
        results=[SubmitResponse(**r.to_dict()) for r in results]
    )


@router.get("/queue", response_model=QueueStatusResponse)
def get_queue_status(scheduler: NotificationScheduler = Depends(get_scheduler)):
    """
    Get queue depths, delivery counters and process metrics.
    """
    return QueueStatusResponse(**scheduler.health())


@router.post("/drain", response_model=DrainResponse)
def drain_queues(scheduler: NotificationScheduler = Depends(get_scheduler)):
    """Run one drain cycle in this process."""
    result = scheduler.drain()
    return DrainResponse(
        skipped=result.skipped,
        processed_priority=result.processed_priority,
        processed_main=result.processed_main,
        processed_delayed=result.processed_delayed,
        flushed_batches=result.flushed_batches
    )


@router.get("/filtering/stats", response_model=FilteringStatsResponse)
def get_filtering_stats(
    day: Optional[str] = Query(None, pattern=r"^\d{4}-\d{2}-\d{2}$", description="YYYY-MM-DD, default today"),
    analytics: FilteringAnalytics = Depends(get_analytics)
):
    stats = analytics.get_stats(day)
    return FilteringStatsResponse(
        day=stats['day'],
        stats=stats,
        effectiveness=analytics.effectiveness(stats['day'])
    )


@router.get("/{intent_id}", response_model=StatusResponse)
def get_notification_status(
    intent_id: str,
    notification_service: NotificationService = Depends(get_notification_service)
):
    record = notification_service.status(intent_id)
    if record is None:
        raise NotFoundException(f"No delivery record for intent {intent_id}")
    return StatusResponse(**record)


@router.delete("/{intent_id}", response_model=CancelResponse)
def cancel_notification(
    intent_id: str,
    notification_service: NotificationService = Depends(get_notification_service)
):
    """Cancel a queued, delayed or batched intent that has not been sent yet."""
    if not notification_service.cancel(intent_id):
        raise NotFoundException(f"Intent {intent_id} is not pending")
    return CancelResponse(intent_id=intent_id, cancelled=True)
