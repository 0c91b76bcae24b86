#!/usr/bin/env python3
"""
FastAPI dependencies for dependency injection.

The AppContext is built once in the app lifespan and kept on app.state;
these helpers hand its components to route handlers.
"""

from fastapi import Request

from core.app_context import AppContext
from notification.analytics import FilteringAnalytics
from notification.broadcaster import RealtimeBroadcaster
from notification.presence import PresenceManager
from notification.scheduler import NotificationScheduler
from notification.service import NotificationService


def get_context(request: Request) -> AppContext:
    """
    FastAPI dependency that returns the wired application context.

    Usage:
        @router.get("/endpoint")
        def my_endpoint(ctx: AppContext = Depends(get_context)):
            ...
    """
    return request.app.state.context


def get_notification_service(request: Request) -> NotificationService:
    return get_context(request).notification_service


def get_scheduler(request: Request) -> NotificationScheduler:
    return get_context(request).scheduler


def get_broadcaster(request: Request) -> RealtimeBroadcaster:
    return get_context(request).broadcaster


def get_analytics(request: Request) -> FilteringAnalytics:
    return get_context(request).analytics


def get_presence(request: Request) -> PresenceManager:
    return get_context(request).presence
