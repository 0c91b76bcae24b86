"""
Notification Module

Notification delivery pipeline for the social app: filtering, scheduling
with batching, rate limits and retries, push delivery, and realtime
broadcast to live connections.

Usage:
    from core.app_context import AppContext
    from notification import NotificationIntent

    ctx = AppContext.build(config)
    ctx.notification_service.submit(NotificationIntent(
        user_id='u1',
        template_id='follow_notification',
        notification_type='follow',
        sender_id='u2',
        variables={'username': 'Sam'},
    ))
"""

from notification.models import (
    NotificationIntent,
    FilteringDecision,
    SubmitResult,
    DeliveryStatus,
    Priority,
    NotificationType,
    RenderedMessage,
    DeviceToken,
)

from notification.exceptions import (
    NotificationError,
    InvalidIntentError,
    TemplateNotFoundError,
    DeliveryError,
    ProviderRateLimitError,
)

from notification.filtering import NotificationFilteringService
from notification.scheduler import NotificationScheduler
from notification.broadcaster import RealtimeBroadcaster
from notification.service import NotificationService

__all__ = [
    # Models
    'NotificationIntent',
    'FilteringDecision',
    'SubmitResult',
    'DeliveryStatus',
    'Priority',
    'NotificationType',
    'RenderedMessage',
    'DeviceToken',
    # Errors
    'NotificationError',
    'InvalidIntentError',
    'TemplateNotFoundError',
    'DeliveryError',
    'ProviderRateLimitError',
    # Pipeline
    'NotificationFilteringService',
    'NotificationScheduler',
    'RealtimeBroadcaster',
    'NotificationService',
]
